from __future__ import annotations

import enum
import json
import os
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, model_validator

from backend.config import (
    APP_VERSION,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    LOGGER,
    PLUGINS_DIR,
    PLUGINS_DISABLED,
)
from backend.llm import (
    AnthropicProvider,
    GabAIProvider,
    GoogleProvider,
    GrokProvider,
    LLMProvider,
    OllamaProvider,
    OpenAICompatibleProvider,
    OpenAIProvider,
    OpenRouterProvider,
    is_openrouter_endpoint,
)

PLUGIN_LOGGER = LOGGER.getChild("plugins")

MANIFEST_FILENAME = "manifest.json"
_VERSION_PATTERN = re.compile(r"(\d+)\.(\d+)\.(\d+)")
_RISKY_PERMISSIONS = {
    "filesystem": "Plugin requests filesystem access",
    "network": "Plugin requests unrestricted network access",
    "database": "Plugin requests direct database access",
}

ProviderFactory = Callable[[Optional[str]], LLMProvider]


class PluginCapability(str, enum.Enum):
    LLM_PROVIDER = "LLM_PROVIDER"
    AUTH_METHODS = "AUTH_METHODS"


class PluginCompatibility(BaseModel):
    min_app_version: str = "0.0.0"
    max_app_version: Optional[str] = None


class PluginManifest(BaseModel):
    name: str = Field(..., pattern=r"^[a-z0-9][a-z0-9-]*$", max_length=64)
    version: str = Field(..., pattern=r"^\d+\.\d+\.\d+")
    title: str
    description: str = ""
    capabilities: List[PluginCapability] = Field(default_factory=list)
    provider_name: Optional[str] = Field(None, pattern=r"^[A-Z][A-Z0-9_]*$")
    requires_base_url: bool = False
    requires_api_key: bool = True
    base_url: Optional[str] = None
    extends: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)
    compatibility: PluginCompatibility = Field(default_factory=PluginCompatibility)
    enabled_by_default: bool = True

    @model_validator(mode="after")
    def _provider_fields(self) -> "PluginManifest":
        if PluginCapability.LLM_PROVIDER in self.capabilities and not self.provider_name:
            raise ValueError("provider_name is required for LLM_PROVIDER plugins")
        if self.extends and self.extends != "OPENAI_COMPATIBLE":
            raise ValueError("extends must be OPENAI_COMPATIBLE")
        return self


class PluginError(BaseModel):
    plugin: str
    error: str


class PluginWarning(BaseModel):
    plugin: str
    warnings: List[str]


class PluginStats(BaseModel):
    total: int = 0
    enabled: int = 0
    disabled: int = 0
    errors: int = 0


class PluginInitializationResult(BaseModel):
    success: bool = False
    stats: PluginStats = Field(default_factory=PluginStats)
    warnings: List[PluginWarning] = Field(default_factory=list)
    errors: List[PluginError] = Field(default_factory=list)


class AuthProviderConfig(BaseModel):
    provider_id: str
    display_name: str
    plugin: str
    configured: bool
    authorization_url: str
    token_url: str
    userinfo_url: str
    scopes: List[str]
    client_id: Optional[str] = None
    client_secret: Optional[str] = Field(None, exclude=True, repr=False)


@dataclass
class LoadedPlugin:
    manifest: PluginManifest
    enabled: bool
    source: str
    factory: Optional[ProviderFactory] = None
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def describe(self) -> Dict[str, object]:
        return {
            **self.manifest.model_dump(mode="json"),
            "enabled": self.enabled,
            "source": self.source,
        }


class PluginRegistrationError(Exception):
    pass


class UnsupportedProviderError(ValueError):
    def __init__(self, provider: str) -> None:
        super().__init__(f"Unsupported provider: {provider}")
        self.provider = provider


class PluginRegistry:
    def __init__(self) -> None:
        self._plugins: Dict[str, LoadedPlugin] = {}
        self._errors: Dict[str, str] = {}

    def clear(self) -> None:
        self._plugins.clear()
        self._errors.clear()

    def register(self, plugin: LoadedPlugin) -> None:
        name = plugin.manifest.name
        if name in self._plugins:
            raise PluginRegistrationError(f"Plugin {name} is already registered")
        self._plugins[name] = plugin
        PLUGIN_LOGGER.debug(
            "plugin_registered name=%s version=%s enabled=%s",
            name,
            plugin.manifest.version,
            plugin.enabled,
        )

    def record_error(self, plugin: str, error: str) -> None:
        self._errors[plugin] = error

    def get(self, name: str) -> Optional[LoadedPlugin]:
        return self._plugins.get(name)

    def all(self) -> List[LoadedPlugin]:
        return list(self._plugins.values())

    def enabled(self, capability: Optional[PluginCapability] = None) -> List[LoadedPlugin]:
        return [
            plugin
            for plugin in self._plugins.values()
            if plugin.enabled
            and (capability is None or capability in plugin.manifest.capabilities)
        ]

    def set_enabled(self, name: str, enabled: bool) -> bool:
        plugin = self._plugins.get(name)
        if plugin is None:
            PLUGIN_LOGGER.warning("plugin_toggle_missing name=%s", name)
            return False
        plugin.enabled = enabled
        PLUGIN_LOGGER.info("plugin_toggled name=%s enabled=%s", name, enabled)
        return True

    def stats(self) -> PluginStats:
        total = len(self._plugins)
        enabled = len(self.enabled())
        return PluginStats(
            total=total,
            enabled=enabled,
            disabled=total - enabled,
            errors=len(self._errors),
        )

    def errors(self) -> List[PluginError]:
        return [PluginError(plugin=name, error=error) for name, error in self._errors.items()]


class ProviderRegistry:
    def __init__(self) -> None:
        self._factories: Dict[str, ProviderFactory] = {}
        self._manifests: Dict[str, PluginManifest] = {}

    def clear(self) -> None:
        self._factories.clear()
        self._manifests.clear()

    def register(self, manifest: PluginManifest, factory: ProviderFactory) -> None:
        provider_name = manifest.provider_name or ""
        if provider_name in self._factories:
            PLUGIN_LOGGER.warning(
                "provider_overridden provider=%s plugin=%s", provider_name, manifest.name
            )
        self._factories[provider_name] = factory
        self._manifests[provider_name] = manifest

    def has(self, provider_name: str) -> bool:
        return provider_name in self._factories

    def names(self) -> List[str]:
        return sorted(self._factories)

    def manifest(self, provider_name: str) -> Optional[PluginManifest]:
        return self._manifests.get(provider_name)

    def create(self, provider_name: str, base_url: Optional[str] = None) -> LLMProvider:
        factory = self._factories.get(provider_name)
        if factory is None:
            raise UnsupportedProviderError(provider_name)
        manifest = self._manifests[provider_name]
        if manifest.requires_base_url and not base_url:
            raise ValueError(f"{provider_name} provider requires a base URL")
        return factory(base_url)


PLUGIN_REGISTRY = PluginRegistry()
PROVIDER_REGISTRY = ProviderRegistry()
AUTH_PROVIDERS: Dict[str, AuthProviderConfig] = {}

_INIT_LOCK = threading.Lock()
_STATE: Dict[str, object] = {"initialized": False, "last_initialized_at": None, "result": None}
_INITIALIZATION_LISTENERS: List[Callable[[], None]] = []


def _builtin(
    name: str,
    provider_name: str,
    title: str,
    requires_base_url: bool = False,
    requires_api_key: bool = True,
) -> PluginManifest:
    return PluginManifest(
        name=name,
        version=APP_VERSION,
        title=title,
        description=f"{title} chat completions",
        capabilities=[PluginCapability.LLM_PROVIDER],
        provider_name=provider_name,
        requires_base_url=requires_base_url,
        requires_api_key=requires_api_key,
    )


BUILTIN_PLUGINS: List[Tuple[PluginManifest, Optional[ProviderFactory]]] = [
    (_builtin("provider-openai", "OPENAI", "OpenAI"), lambda base_url: OpenAIProvider()),
    (_builtin("provider-anthropic", "ANTHROPIC", "Anthropic"), lambda base_url: AnthropicProvider()),
    (
        _builtin("provider-ollama", "OLLAMA", "Ollama", requires_base_url=True, requires_api_key=False),
        lambda base_url: OllamaProvider(base_url or ""),
    ),
    (_builtin("provider-openrouter", "OPENROUTER", "OpenRouter"), lambda base_url: OpenRouterProvider()),
    (
        _builtin(
            "provider-openai-compatible",
            "OPENAI_COMPATIBLE",
            "OpenAI-compatible",
            requires_base_url=True,
            requires_api_key=False,
        ),
        lambda base_url: OpenAICompatibleProvider(base_url or ""),
    ),
    (_builtin("provider-grok", "GROK", "Grok"), lambda base_url: GrokProvider()),
    (_builtin("provider-gab-ai", "GAB_AI", "Gab AI"), lambda base_url: GabAIProvider()),
    (_builtin("provider-google", "GOOGLE", "Google Gemini"), lambda base_url: GoogleProvider()),
    (
        PluginManifest(
            name="auth-google",
            version=APP_VERSION,
            title="Google sign-in",
            description="OAuth login with a Google account",
            capabilities=[PluginCapability.AUTH_METHODS],
            requires_api_key=False,
        ),
        None,
    ),
]


def _parse_version(value: Optional[str]) -> Tuple[int, int, int]:
    match = _VERSION_PATTERN.search(value or "")
    if not match:
        return (0, 0, 0)
    return (int(match.group(1)), int(match.group(2)), int(match.group(3)))


def is_plugin_compatible(manifest: PluginManifest, app_version: str = APP_VERSION) -> bool:
    current = _parse_version(app_version)
    if current < _parse_version(manifest.compatibility.min_app_version):
        return False
    if manifest.compatibility.max_app_version:
        return current <= _parse_version(manifest.compatibility.max_app_version)
    return True


def validate_plugin_security(manifest: PluginManifest) -> List[str]:
    return [
        _RISKY_PERMISSIONS[permission]
        for permission in manifest.permissions
        if permission in _RISKY_PERMISSIONS
    ]


def _declared_provider_factory(manifest: PluginManifest) -> Optional[ProviderFactory]:
    if manifest.extends != "OPENAI_COMPATIBLE":
        return None
    default_url = manifest.base_url
    provider_name = manifest.provider_name or "OPENAI_COMPATIBLE"

    def factory(base_url: Optional[str]) -> LLMProvider:
        provider = OpenAICompatibleProvider(base_url or default_url or "")
        provider.name = provider_name
        return provider

    return factory


def scan_plugins(
    plugins_dir: str = PLUGINS_DIR,
) -> Tuple[List[LoadedPlugin], List[PluginError]]:
    plugins = [
        LoadedPlugin(manifest=manifest, enabled=manifest.enabled_by_default, source="builtin", factory=factory)
        for manifest, factory in BUILTIN_PLUGINS
    ]
    errors: List[PluginError] = []
    if not os.path.isdir(plugins_dir):
        return plugins, errors
    for entry in sorted(os.listdir(plugins_dir)):
        manifest_path = os.path.join(plugins_dir, entry, MANIFEST_FILENAME)
        if not os.path.isfile(manifest_path):
            continue
        try:
            with open(manifest_path, "r", encoding="utf-8") as handle:
                manifest = PluginManifest.model_validate(json.load(handle))
        except (OSError, ValueError, ValidationError) as exc:
            PLUGIN_LOGGER.warning("plugin_manifest_invalid dir=%s error=%s", entry, exc)
            errors.append(PluginError(plugin=entry, error=f"Invalid manifest: {exc}"))
            continue
        factory = None
        if PluginCapability.LLM_PROVIDER in manifest.capabilities:
            factory = _declared_provider_factory(manifest)
            if factory is None:
                errors.append(
                    PluginError(
                        plugin=manifest.name,
                        error="Provider plugins must extend OPENAI_COMPATIBLE",
                    )
                )
                continue
            if not manifest.base_url and not manifest.requires_base_url:
                errors.append(
                    PluginError(
                        plugin=manifest.name,
                        error="Provider plugins need a base_url or requires_base_url",
                    )
                )
                continue
        plugins.append(
            LoadedPlugin(
                manifest=manifest,
                enabled=manifest.enabled_by_default,
                source=os.path.join(plugins_dir, entry),
                factory=factory,
            )
        )
    return plugins, errors


def _google_auth_provider(plugin: LoadedPlugin) -> AuthProviderConfig:
    return AuthProviderConfig(
        provider_id="google",
        display_name="Google",
        plugin=plugin.manifest.name,
        configured=bool(GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET),
        authorization_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        userinfo_url="https://openidconnect.googleapis.com/v1/userinfo",
        scopes=["openid", "email", "profile"],
        client_id=GOOGLE_CLIENT_ID,
        client_secret=GOOGLE_CLIENT_SECRET,
    )


_AUTH_BUILDERS: Dict[str, Callable[[LoadedPlugin], AuthProviderConfig]] = {
    "auth-google": _google_auth_provider,
}


def _rebuild_registries() -> None:
    PROVIDER_REGISTRY.clear()
    AUTH_PROVIDERS.clear()
    for plugin in PLUGIN_REGISTRY.enabled(PluginCapability.LLM_PROVIDER):
        if plugin.factory is not None:
            PROVIDER_REGISTRY.register(plugin.manifest, plugin.factory)
    for plugin in PLUGIN_REGISTRY.enabled(PluginCapability.AUTH_METHODS):
        builder = _AUTH_BUILDERS.get(plugin.manifest.name)
        if builder is None:
            continue
        config = builder(plugin)
        AUTH_PROVIDERS[config.provider_id] = config
    for listener in list(_INITIALIZATION_LISTENERS):
        listener()


def on_plugins_changed(listener: Callable[[], None]) -> None:
    if listener not in _INITIALIZATION_LISTENERS:
        _INITIALIZATION_LISTENERS.append(listener)


def _perform_initialization() -> PluginInitializationResult:
    started = time.monotonic()
    result = PluginInitializationResult()
    PLUGIN_REGISTRY.clear()
    plugins, scan_errors = scan_plugins()
    result.errors.extend(scan_errors)

    for plugin in plugins:
        name = plugin.manifest.name
        if not is_plugin_compatible(plugin.manifest):
            result.errors.append(
                PluginError(
                    plugin=name,
                    error=(
                        f"Incompatible with app version {APP_VERSION}. "
                        f"Requires: >={plugin.manifest.compatibility.min_app_version}"
                    ),
                )
            )
            continue
        security_warnings = validate_plugin_security(plugin.manifest)
        if security_warnings:
            result.warnings.append(PluginWarning(plugin=name, warnings=security_warnings))
        if name in PLUGINS_DISABLED:
            plugin.enabled = False
        try:
            PLUGIN_REGISTRY.register(plugin)
        except PluginRegistrationError as exc:
            result.errors.append(PluginError(plugin=name, error=str(exc)))

    for error in result.errors:
        PLUGIN_REGISTRY.record_error(error.plugin, error.error)
    _rebuild_registries()

    result.success = True
    result.stats = PLUGIN_REGISTRY.stats()
    PLUGIN_LOGGER.info(
        "plugins_initialized total=%s enabled=%s errors=%s providers=%s duration_ms=%d",
        result.stats.total,
        result.stats.enabled,
        result.stats.errors,
        ",".join(PROVIDER_REGISTRY.names()),
        (time.monotonic() - started) * 1000,
    )
    return result


def initialize_plugins() -> PluginInitializationResult:
    if _STATE["initialized"]:
        return PluginInitializationResult(
            success=True,
            stats=PLUGIN_REGISTRY.stats(),
            errors=PLUGIN_REGISTRY.errors(),
        )
    with _INIT_LOCK:
        if _STATE["initialized"]:
            PLUGIN_LOGGER.debug("plugins_already_initialized")
            return _STATE["result"]
        try:
            result = _perform_initialization()
        except Exception as exc:
            PLUGIN_LOGGER.exception("plugins_initialization_failed")
            return PluginInitializationResult(
                success=False,
                stats=PLUGIN_REGISTRY.stats(),
                errors=[PluginError(plugin="plugin-system", error=str(exc))],
            )
        _STATE["result"] = result
        _STATE["last_initialized_at"] = datetime.now(timezone.utc)
        _STATE["initialized"] = True
        return result


def get_plugin_system_state() -> Dict[str, object]:
    last = _STATE["last_initialized_at"]
    return {
        "initialized": bool(_STATE["initialized"]),
        "last_initialized_at": last.isoformat() if isinstance(last, datetime) else None,
        "stats": PLUGIN_REGISTRY.stats().model_dump(),
        "errors": [error.model_dump() for error in PLUGIN_REGISTRY.errors()],
        "providers": PROVIDER_REGISTRY.names(),
    }


def set_plugin_enabled(name: str, enabled: bool) -> LoadedPlugin:
    initialize_plugins()
    with _INIT_LOCK:
        if not PLUGIN_REGISTRY.set_enabled(name, enabled):
            raise KeyError(name)
        _rebuild_registries()
        return PLUGIN_REGISTRY.get(name)


def reset_plugin_system() -> None:
    with _INIT_LOCK:
        PLUGIN_REGISTRY.clear()
        PROVIDER_REGISTRY.clear()
        AUTH_PROVIDERS.clear()
        _STATE["initialized"] = False
        _STATE["last_initialized_at"] = None
        _STATE["result"] = None


def create_llm_provider(provider: str, base_url: Optional[str] = None) -> LLMProvider:
    if not _STATE["initialized"]:
        initialize_plugins()
    provider_name = getattr(provider, "value", provider)
    if (
        provider_name == "OPENAI_COMPATIBLE"
        and is_openrouter_endpoint(base_url)
        and PROVIDER_REGISTRY.has("OPENROUTER")
    ):
        PLUGIN_LOGGER.info("openrouter_endpoint_detected base_url=%s", base_url)
        provider_name = "OPENROUTER"
    return PROVIDER_REGISTRY.create(provider_name, base_url)
