from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import secrets
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import httpx
from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, RedirectResponse, StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from backend import plugins
from backend.chat import build_system_prompt, generate_greeting_message, history_messages, profile_params
from backend.config import (
    APP_NAME,
    APP_VERSION,
    AUTH_SECRET,
    AUTH_SESSION_TTL_MINUTES,
    AUTH_STATE_TTL_SECONDS,
    FILE_MAX_BYTES,
    FILE_STORAGE_ROOT,
    FRONTEND_OAUTH_REDIRECT,
    FRONTEND_ORIGIN,
    LOGGER,
    OAUTH_REDIRECT_URI,
)
from backend.crypto import decrypt_api_key, encrypt_api_key, mask_api_key
from backend.db import (
    ApiKey,
    AvatarDisplayMode,
    Character,
    CharacterPersona,
    Chat,
    ChatSettings,
    ConnectionProfile,
    EntityTag,
    File as StoredFile,
    FileCategory,
    FileSource,
    Message,
    MessageRole,
    Persona,
    Tag,
    TaggedEntity,
    User,
    as_utc,
    db_session,
    init_db,
)
from backend.llm import (
    AttachmentResults,
    FileAttachment,
    LLMMessage,
    LLMParams,
    LLMProvider,
    LLMProviderError,
    LLMUsage,
    user_friendly_error,
)
from backend.migrations import (
    ProfileConversionResult,
    check_openrouter_profiles,
    convert_openrouter_profiles,
)
from backend.plugins import AuthProviderConfig, PluginInitializationResult
from backend.presentation import (
    TagVisualStyle,
    TagVisualStylePatch,
    format_relative_time,
    merge_tag_style_map,
    merge_with_default_tag_style,
)
from backend.sillytavern import (
    CardFormatError,
    convert_multi_persona_backup,
    create_st_character_png,
    export_st_character,
    export_st_chat,
    export_st_persona,
    import_st_character,
    import_st_chat,
    import_st_persona,
    is_multi_persona_backup,
    parse_st_character_png,
)

AUTH_LOGGER = LOGGER.getChild("auth")

IMAGE_MIME_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}
ALLOWED_MIME_TYPES: Dict[FileCategory, set] = {
    FileCategory.IMAGE: IMAGE_MIME_TYPES,
    FileCategory.AVATAR: IMAGE_MIME_TYPES,
    FileCategory.ATTACHMENT: IMAGE_MIME_TYPES
    | {"application/pdf", "text/plain", "text/markdown", "application/json"},
}
TEST_MESSAGE = "Hello! Please respond with a brief greeting."

app = FastAPI(title=f"{APP_NAME} Backend", version=APP_VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class UserProfile(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    created_at: datetime


class AuthRegisterRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str
    name: Optional[str] = Field(None, max_length=255)


class AuthLoginRequest(BaseModel):
    email: str
    password: str


class AuthResponse(BaseModel):
    token: str
    user: UserProfile
    expires_at: datetime


class AuthMeResponse(BaseModel):
    user: UserProfile


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


class AuthMethod(BaseModel):
    provider_id: str
    display_name: str


class AuthStatusResponse(BaseModel):
    methods: List[AuthMethod]


class OAuthStartRequest(BaseModel):
    provider: str


class OAuthStartResponse(BaseModel):
    provider: str
    auth_url: str
    state: str


class OAuthIdentity(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None


class CharacterCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    title: Optional[str] = Field(None, max_length=255)
    description: str = ""
    personality: str = ""
    scenario: str = ""
    first_message: str = ""
    example_dialogues: Optional[str] = None
    system_prompt: Optional[str] = None
    default_connection_profile_id: Optional[str] = None


class CharacterUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    title: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    personality: Optional[str] = None
    scenario: Optional[str] = None
    first_message: Optional[str] = None
    example_dialogues: Optional[str] = None
    system_prompt: Optional[str] = None
    default_connection_profile_id: Optional[str] = None
    is_favorite: Optional[bool] = None


class CharacterRecord(BaseModel):
    id: str
    name: str
    title: Optional[str] = None
    description: str
    personality: str
    scenario: str
    first_message: str
    example_dialogues: Optional[str] = None
    system_prompt: Optional[str] = None
    avatar_file_id: Optional[str] = None
    default_connection_profile_id: Optional[str] = None
    is_favorite: bool
    tag_ids: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    updated_label: str


class CharacterListResponse(BaseModel):
    characters: List[CharacterRecord]


class CharacterImportRequest(BaseModel):
    card: Dict[str, object]


class CharacterPersonaLinkRequest(BaseModel):
    persona_id: str
    is_default: bool = False


class PersonaCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    title: Optional[str] = Field(None, max_length=255)
    description: str = ""
    personality_traits: Optional[str] = None


class PersonaUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    title: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    personality_traits: Optional[str] = None


class PersonaRecord(BaseModel):
    id: str
    name: str
    title: Optional[str] = None
    description: str
    personality_traits: Optional[str] = None
    tag_ids: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class PersonaListResponse(BaseModel):
    personas: List[PersonaRecord]


class PersonaImportRequest(BaseModel):
    persona_data: Dict[str, object]


class PersonaImportResponse(BaseModel):
    personas: List[PersonaRecord]
    count: int
    message: str


class CharacterPersonaRecord(BaseModel):
    persona: PersonaRecord
    is_default: bool


class TagCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class TagRecord(BaseModel):
    id: str
    name: str
    style: TagVisualStyle
    created_at: datetime


class TagListResponse(BaseModel):
    tags: List[TagRecord]


class TagLinkRequest(BaseModel):
    entity_type: TaggedEntity
    entity_id: str


class ChatSettingsRecord(BaseModel):
    avatar_display_mode: AvatarDisplayMode
    tag_styles: Dict[str, TagVisualStyle]


class ChatSettingsUpdateRequest(BaseModel):
    avatar_display_mode: Optional[AvatarDisplayMode] = None
    tag_styles: Optional[Dict[str, TagVisualStylePatch]] = None


class ApiKeyCreateRequest(BaseModel):
    label: str = Field(..., min_length=1, max_length=100)
    provider: str
    api_key: str = Field(..., min_length=1)


class ApiKeyRecord(BaseModel):
    id: str
    label: str
    provider: str
    masked_key: str
    is_active: bool
    last_used: Optional[datetime] = None
    created_at: datetime


class ApiKeyListResponse(BaseModel):
    api_keys: List[ApiKeyRecord]


class ProfileCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    provider: str
    model_name: str = Field(..., min_length=1)
    api_key_id: Optional[str] = None
    base_url: Optional[str] = None
    parameters: Dict[str, object] = Field(default_factory=dict)
    is_default: bool = False


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    provider: Optional[str] = None
    model_name: Optional[str] = None
    api_key_id: Optional[str] = None
    base_url: Optional[str] = None
    parameters: Optional[Dict[str, object]] = None
    is_default: Optional[bool] = None


class ProfileRecord(BaseModel):
    id: str
    name: str
    provider: str
    model_name: str
    api_key_id: Optional[str] = None
    base_url: Optional[str] = None
    parameters: Dict[str, object]
    is_default: bool
    tag_ids: List[str] = Field(default_factory=list)
    created_at: datetime


class ProfileListResponse(BaseModel):
    profiles: List[ProfileRecord]


class ProviderTestRequest(BaseModel):
    provider: str
    base_url: Optional[str] = None
    api_key_id: Optional[str] = None
    model_name: Optional[str] = None
    parameters: Dict[str, object] = Field(default_factory=dict)
    message: Optional[str] = None


class ConnectionTestResponse(BaseModel):
    valid: bool
    provider: str
    models: List[str] = Field(default_factory=list)
    message: str


class MessageTestResponse(BaseModel):
    provider: str
    model: str
    content: str
    finish_reason: str
    usage: LLMUsage


class ProviderInfo(BaseModel):
    provider: str
    plugin: str
    title: str
    requires_base_url: bool
    requires_api_key: bool


class ChatCreateRequest(BaseModel):
    character_id: str
    persona_id: Optional[str] = None
    connection_profile_id: Optional[str] = None
    title: Optional[str] = Field(None, max_length=255)


class MessageRecord(BaseModel):
    id: str
    role: MessageRole
    content: str
    token_count: Optional[int] = None
    attachments: List[str] = Field(default_factory=list)
    swipe_group_id: Optional[str] = None
    swipe_index: int = 0
    created_at: datetime


class ChatRecord(BaseModel):
    id: str
    character_id: str
    persona_id: Optional[str] = None
    connection_profile_id: str
    title: str
    message_count: int
    last_message_at: Optional[datetime] = None
    last_message_label: Optional[str] = None
    created_at: datetime


class ChatDetailResponse(BaseModel):
    chat: ChatRecord
    messages: List[MessageRecord]


class ChatListResponse(BaseModel):
    chats: List[ChatRecord]


class ChatMessageRequest(BaseModel):
    content: str
    stream: bool = False
    file_ids: List[str] = Field(default_factory=list)


class ChatReplyResponse(BaseModel):
    user_message: MessageRecord
    assistant_message: MessageRecord
    usage: LLMUsage
    attachment_results: Optional[AttachmentResults] = None


class ChatImportRequest(BaseModel):
    chat_data: Any
    character_id: str
    connection_profile_id: Optional[str] = None
    persona_id: Optional[str] = None
    title: Optional[str] = Field(None, max_length=255)


class ChatSeed(BaseModel):
    character_name: str
    persona_id: Optional[str] = None
    profile_id: str
    provider: str
    base_url: Optional[str] = None
    model_name: str
    api_key: str
    system_prompt: str
    first_message: str
    settings: Dict[str, object]


class PendingReply(BaseModel):
    params: LLMParams
    api_key: str
    provider: str
    base_url: Optional[str] = None
    user_message: MessageRecord


class FileRecord(BaseModel):
    id: str
    filename: str
    mime_type: str
    size: int
    sha256: str
    category: FileCategory
    source: FileSource
    character_id: Optional[str] = None
    chat_id: Optional[str] = None
    created_at: datetime


class FileListResponse(BaseModel):
    files: List[FileRecord]


class PluginToggleRequest(BaseModel):
    enabled: bool


class PasswordRecord(BaseModel):
    salt: str
    digest: str


class SessionRecord(BaseModel):
    session_id: str
    user_id: str
    created_at: datetime
    expires_at: datetime


class AuthHandler(BaseModel):
    methods: List[AuthMethod]
    oauth_providers: Dict[str, AuthProviderConfig]
    built_at: datetime


SESSIONS: Dict[str, SessionRecord] = {}
OAUTH_STATES: Dict[str, Dict[str, str]] = {}
_AUTH_HANDLER_LOCK = threading.Lock()
_AUTH_HANDLER_CACHE: Dict[str, object] = {"handler": None, "generation": 0}


class RateLimiter:
    def __init__(self) -> None:
        self.hits: Dict[str, List[float]] = {}

    def check(self, key: str, limit: int, window_seconds: int) -> None:
        now = time.time()
        window_start = now - window_seconds
        timestamps = [ts for ts in self.hits.get(key, []) if ts > window_start]
        if len(timestamps) >= limit:
            raise HTTPException(
                status_code=429,
                detail="Rate limit exceeded. Please slow down and try again.",
            )
        timestamps.append(now)
        self.hits[key] = timestamps

    def reset(self) -> None:
        self.hits.clear()


RATE_LIMITER = RateLimiter()


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _hash_password(password: str, salt: Optional[str] = None) -> PasswordRecord:
    resolved_salt = salt or secrets.token_hex(8)
    digest = hashlib.sha256(f"{resolved_salt}{password}".encode("utf-8")).hexdigest()
    return PasswordRecord(salt=resolved_salt, digest=digest)


def _verify_password(password: str, user: User) -> bool:
    if not user.password_salt or not user.password_digest:
        return False
    digest = hashlib.sha256(f"{user.password_salt}{password}".encode("utf-8")).hexdigest()
    return hmac.compare_digest(digest, user.password_digest)


def _ensure_password_strength(password: str) -> None:
    if len(password) < 8:
        raise HTTPException(status_code=400, detail="Password must be at least 8 characters.")


def _user_profile(user: User) -> UserProfile:
    return UserProfile(
        user_id=user.id,
        email=user.email,
        name=user.name,
        created_at=as_utc(user.created_at),
    )


def _create_user(session: Session, email: str, name: Optional[str], password: str) -> User:
    normalized = _normalize_email(email)
    if "@" not in normalized:
        raise HTTPException(status_code=400, detail="A valid email is required.")
    existing = session.scalar(select(User).where(User.email == normalized))
    if existing is not None:
        raise HTTPException(status_code=409, detail="Email is already registered.")
    record = _hash_password(password)
    user = User(
        id=uuid.uuid4().hex,
        email=normalized,
        name=name,
        password_salt=record.salt,
        password_digest=record.digest,
    )
    session.add(user)
    session.flush()
    session.add(ChatSettings(user_id=user.id, tag_styles={}))
    AUTH_LOGGER.info("user_registered user_id=%s", user.id)
    return user


def _create_session(user_id: str) -> SessionRecord:
    now = datetime.now(timezone.utc)
    session = SessionRecord(
        session_id=uuid.uuid4().hex,
        user_id=user_id,
        created_at=now,
        expires_at=now + timedelta(minutes=AUTH_SESSION_TTL_MINUTES),
    )
    SESSIONS[session.session_id] = session
    return session


def _encode_token(session: SessionRecord) -> str:
    payload = {
        "session_id": session.session_id,
        "user_id": session.user_id,
        "exp": int(session.expires_at.timestamp()),
    }
    payload_bytes = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    b64_payload = base64.urlsafe_b64encode(payload_bytes).decode("utf-8").rstrip("=")
    signature = hmac.new(
        AUTH_SECRET.encode("utf-8"),
        b64_payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"{b64_payload}.{signature}"


def _decode_token(token: str) -> Dict[str, object]:
    try:
        b64_payload, signature = token.split(".", 1)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Invalid auth token.") from exc
    expected = hmac.new(
        AUTH_SECRET.encode("utf-8"),
        b64_payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    if not hmac.compare_digest(signature, expected):
        raise HTTPException(status_code=401, detail="Invalid auth token.")
    padded = b64_payload + "=" * (-len(b64_payload) % 4)
    try:
        data = json.loads(base64.urlsafe_b64decode(padded))
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Invalid auth token payload.") from exc
    if not isinstance(data, dict):
        raise HTTPException(status_code=401, detail="Invalid auth token payload.")
    return data


def _current_session(request: Request) -> SessionRecord:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing auth token.")
    token = auth_header.split(" ", 1)[1].strip()
    payload = _decode_token(token)
    session_id = payload.get("session_id")
    if not isinstance(session_id, str):
        raise HTTPException(status_code=401, detail="Invalid auth token payload.")
    session = SESSIONS.get(session_id)
    if not session:
        raise HTTPException(status_code=401, detail="Invalid auth session.")
    if session.expires_at < datetime.now(timezone.utc):
        SESSIONS.pop(session_id, None)
        raise HTTPException(status_code=401, detail="Auth session expired.")
    return session


def _current_user(session: SessionRecord = Depends(_current_session)) -> UserProfile:
    with db_session() as db:
        user = db.get(User, session.user_id)
        if user is None:
            raise HTTPException(status_code=401, detail="Invalid auth user.")
        return _user_profile(user)


def _rate_limit(scope: str, limit: int, window_seconds: int):
    def _dependency(request: Request) -> None:
        host = request.client.host if request.client else "unknown"
        key = f"{scope}:{host}"
        RATE_LIMITER.check(key, limit=limit, window_seconds=window_seconds)

    return _dependency


def _build_auth_handler() -> AuthHandler:
    configured = {
        provider_id: config
        for provider_id, config in plugins.AUTH_PROVIDERS.items()
        if config.configured
    }
    methods = [AuthMethod(provider_id="credentials", display_name="Email and password")]
    methods.extend(
        AuthMethod(provider_id=config.provider_id, display_name=config.display_name)
        for config in configured.values()
    )
    return AuthHandler(
        methods=methods,
        oauth_providers=configured,
        built_at=datetime.now(timezone.utc),
    )


def get_auth_handler() -> AuthHandler:
    handler = _AUTH_HANDLER_CACHE["handler"]
    if handler is not None:
        return handler
    with _AUTH_HANDLER_LOCK:
        handler = _AUTH_HANDLER_CACHE["handler"]
        if handler is not None:
            return handler
        plugins.initialize_plugins()
        generation = _AUTH_HANDLER_CACHE["generation"]
        handler = _build_auth_handler()
        # A plugin change during the build leaves the handler uncached.
        if _AUTH_HANDLER_CACHE["generation"] == generation:
            _AUTH_HANDLER_CACHE["handler"] = handler
        AUTH_LOGGER.info(
            "auth_handler_built methods=%s",
            ",".join(method.provider_id for method in handler.methods),
        )
    return handler


def clear_auth_handler_cache() -> None:
    _AUTH_HANDLER_CACHE["handler"] = None
    _AUTH_HANDLER_CACHE["generation"] += 1


plugins.on_plugins_changed(clear_auth_handler_cache)


def _not_found(label: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"{label} not found.")


def _owned(
    session: Session,
    model,
    record_id: Optional[str],
    user_id: str,
    label: str,
    for_update: bool = False,
):
    record = session.get(model, record_id, with_for_update=for_update) if record_id else None
    if record is None or record.user_id != user_id:
        raise _not_found(label)
    return record


def _tag_ids(session: Session, entity_type: TaggedEntity, entity_id: str) -> List[str]:
    return list(
        session.scalars(
            select(EntityTag.tag_id).where(
                EntityTag.entity_type == entity_type,
                EntityTag.entity_id == entity_id,
            )
        )
    )


def _drop_entity_tags(session: Session, entity_type: TaggedEntity, entity_id: str) -> None:
    session.execute(
        delete(EntityTag).where(
            EntityTag.entity_type == entity_type,
            EntityTag.entity_id == entity_id,
        )
    )


def _character_record(session: Session, character: Character) -> CharacterRecord:
    return CharacterRecord(
        id=character.id,
        name=character.name,
        title=character.title,
        description=character.description or "",
        personality=character.personality or "",
        scenario=character.scenario or "",
        first_message=character.first_message or "",
        example_dialogues=character.example_dialogues,
        system_prompt=character.system_prompt,
        avatar_file_id=character.avatar_file_id,
        default_connection_profile_id=character.default_connection_profile_id,
        is_favorite=bool(character.is_favorite),
        tag_ids=_tag_ids(session, TaggedEntity.CHARACTER, character.id),
        created_at=as_utc(character.created_at),
        updated_at=as_utc(character.updated_at),
        updated_label=format_relative_time(character.updated_at),
    )


def _persona_record(session: Session, persona: Persona) -> PersonaRecord:
    return PersonaRecord(
        id=persona.id,
        name=persona.name,
        title=persona.title,
        description=persona.description or "",
        personality_traits=persona.personality_traits,
        tag_ids=_tag_ids(session, TaggedEntity.PERSONA, persona.id),
        created_at=as_utc(persona.created_at),
        updated_at=as_utc(persona.updated_at),
    )


def _profile_record(session: Session, profile: ConnectionProfile) -> ProfileRecord:
    return ProfileRecord(
        id=profile.id,
        name=profile.name,
        provider=profile.provider,
        model_name=profile.model_name,
        api_key_id=profile.api_key_id,
        base_url=profile.base_url,
        parameters=profile.parameters or {},
        is_default=bool(profile.is_default),
        tag_ids=_tag_ids(session, TaggedEntity.PROFILE, profile.id),
        created_at=as_utc(profile.created_at),
    )


def _chat_record(chat: Chat) -> ChatRecord:
    return ChatRecord(
        id=chat.id,
        character_id=chat.character_id,
        persona_id=chat.persona_id,
        connection_profile_id=chat.connection_profile_id,
        title=chat.title,
        message_count=chat.message_count or 0,
        last_message_at=as_utc(chat.last_message_at),
        last_message_label=(
            format_relative_time(chat.last_message_at) if chat.last_message_at else None
        ),
        created_at=as_utc(chat.created_at),
    )


def _message_record(message: Message) -> MessageRecord:
    return MessageRecord(
        id=message.id,
        role=message.role,
        content=message.content,
        token_count=message.token_count,
        attachments=list(message.attachments or []),
        swipe_group_id=message.swipe_group_id,
        swipe_index=message.swipe_index or 0,
        created_at=as_utc(message.created_at),
    )


def _file_record(stored: StoredFile) -> FileRecord:
    return FileRecord(
        id=stored.id,
        filename=stored.filename,
        mime_type=stored.mime_type,
        size=stored.size,
        sha256=stored.sha256,
        category=stored.category,
        source=stored.source,
        character_id=stored.character_id,
        chat_id=stored.chat_id,
        created_at=as_utc(stored.created_at),
    )


def _chat_settings(session: Session, user_id: str) -> ChatSettings:
    settings = session.get(ChatSettings, user_id)
    if settings is None:
        settings = ChatSettings(
            user_id=user_id,
            avatar_display_mode=AvatarDisplayMode.ALWAYS,
            tag_styles={},
        )
        session.add(settings)
        session.flush()
    return settings


def _tag_record(tag: Tag, styles: Dict[str, object]) -> TagRecord:
    raw = styles.get(tag.id)
    return TagRecord(
        id=tag.id,
        name=tag.name,
        style=merge_with_default_tag_style(raw if isinstance(raw, dict) else None),
        created_at=as_utc(tag.created_at),
    )


def _append_message(
    session: Session,
    chat: Chat,
    role: MessageRole,
    content: str,
    token_count: Optional[int] = None,
    attachments: Optional[List[str]] = None,
    created_at: Optional[datetime] = None,
    swipe_group_id: Optional[str] = None,
    swipe_index: int = 0,
    raw_response: Optional[Dict[str, object]] = None,
) -> Message:
    """Append at ``message_count + 1``; callers hold the chat row lock."""
    created_at = created_at or datetime.now(timezone.utc)
    message = Message(
        id=uuid.uuid4().hex,
        seq=(chat.message_count or 0) + 1,
        role=role,
        content=content,
        token_count=token_count,
        attachments=attachments or None,
        swipe_group_id=swipe_group_id,
        swipe_index=swipe_index,
        raw_response=raw_response,
        created_at=created_at,
    )
    chat.messages.append(message)
    chat.message_count = message.seq
    chat.last_message_at = created_at
    session.flush()
    return message


def _decrypt_profile_key(session: Session, user_id: str, api_key_id: Optional[str]) -> str:
    if not api_key_id:
        return ""
    key = _owned(session, ApiKey, api_key_id, user_id, "API key")
    if not key.is_active:
        raise HTTPException(status_code=400, detail="API key is inactive.")
    try:
        plaintext = decrypt_api_key(key.ciphertext, key.iv, key.auth_tag, user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    key.last_used = datetime.now(timezone.utc)
    return plaintext


def _create_provider(provider: str, base_url: Optional[str]) -> LLMProvider:
    try:
        return plugins.create_llm_provider(provider, base_url)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _storage_path(relative_path: str) -> str:
    base_dir = os.path.abspath(FILE_STORAGE_ROOT)
    normalized = os.path.normpath(relative_path).replace("\\", "/")
    if os.path.isabs(normalized) or normalized.startswith("../") or normalized in ("", ".", ".."):
        raise HTTPException(status_code=400, detail="Invalid path.")
    full_path = os.path.normpath(os.path.join(base_dir, normalized))
    if os.path.commonpath([base_dir, full_path]) != base_dir:
        raise HTTPException(status_code=400, detail="Invalid path.")
    return full_path


def _file_extension(filename: str) -> str:
    ext = os.path.splitext(filename)[1].lower()
    if not ext or len(ext) > 10 or not ext[1:].isalnum():
        return ""
    return ext


def _store_file(
    session: Session,
    user_id: str,
    filename: str,
    mime_type: str,
    content: bytes,
    category: FileCategory,
    source: FileSource = FileSource.UPLOADED,
    character_id: Optional[str] = None,
    chat_id: Optional[str] = None,
) -> StoredFile:
    filename = os.path.basename(filename or "")
    if not filename:
        raise HTTPException(status_code=400, detail="File name is required.")
    if mime_type not in ALLOWED_MIME_TYPES[category]:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported file type {mime_type} for {category.value.lower()}.",
        )
    if not content:
        raise HTTPException(status_code=400, detail="File is empty.")
    if len(content) > FILE_MAX_BYTES:
        raise HTTPException(status_code=400, detail="File is too large.")
    digest = hashlib.sha256(content).hexdigest()
    relative_path = f"{user_id}/{category.value.lower()}/{digest}{_file_extension(filename)}"
    full_path = _storage_path(relative_path)
    if not os.path.isfile(full_path):
        os.makedirs(os.path.dirname(full_path), exist_ok=True)
        with open(full_path, "wb") as output_file:
            output_file.write(content)
    stored = StoredFile(
        id=uuid.uuid4().hex,
        user_id=user_id,
        sha256=digest,
        filename=filename,
        relative_path=relative_path,
        mime_type=mime_type,
        size=len(content),
        category=category,
        source=source,
        character_id=character_id,
        chat_id=chat_id,
    )
    session.add(stored)
    session.flush()
    LOGGER.info(
        "file_stored user_id=%s file_id=%s category=%s size=%s",
        user_id,
        stored.id,
        category.value,
        stored.size,
    )
    return stored


def _read_upload(file: UploadFile) -> bytes:
    content = file.file.read(FILE_MAX_BYTES + 1)
    if len(content) > FILE_MAX_BYTES:
        raise HTTPException(status_code=400, detail="File is too large.")
    return content


def _default_persona(character: Character) -> Optional[Persona]:
    for link in character.persona_links:
        if link.is_default:
            return link.persona
    return None


@app.exception_handler(LLMProviderError)
async def provider_error_handler(request: Request, exc: LLMProviderError) -> JSONResponse:
    return JSONResponse(
        status_code=502,
        content={
            "detail": user_friendly_error(exc),
            "provider": exc.provider,
            "error_type": type(exc).__name__,
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    LOGGER.error(
        "unhandled_error method=%s path=%s error_type=%s",
        request.method,
        request.url.path,
        type(exc).__name__,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error.", "error_type": type(exc).__name__},
    )


@app.on_event("startup")
def _startup() -> None:
    init_db()
    os.makedirs(FILE_STORAGE_ROOT, exist_ok=True)
    convert_openrouter_profiles()
    result = plugins.initialize_plugins()
    if not result.success:
        LOGGER.warning("startup_plugins_failed errors=%s", len(result.errors))


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/auth/register", response_model=AuthResponse)
def auth_register(
    payload: AuthRegisterRequest,
    _: None = Depends(_rate_limit("auth", limit=10, window_seconds=60)),
) -> AuthResponse:
    _ensure_password_strength(payload.password)
    with db_session() as session:
        user = _create_user(session, payload.email, name=payload.name, password=payload.password)
        profile = _user_profile(user)
    auth_session = _create_session(profile.user_id)
    return AuthResponse(
        token=_encode_token(auth_session),
        user=profile,
        expires_at=auth_session.expires_at,
    )


@app.post("/auth/login", response_model=AuthResponse)
def auth_login(
    payload: AuthLoginRequest,
    _: None = Depends(_rate_limit("auth", limit=10, window_seconds=60)),
) -> AuthResponse:
    with db_session() as session:
        user = session.scalar(select(User).where(User.email == _normalize_email(payload.email)))
        if user is None or not _verify_password(payload.password, user):
            AUTH_LOGGER.info("login_failed")
            raise HTTPException(status_code=401, detail="Invalid email or password.")
        profile = _user_profile(user)
    auth_session = _create_session(profile.user_id)
    return AuthResponse(
        token=_encode_token(auth_session),
        user=profile,
        expires_at=auth_session.expires_at,
    )


@app.post("/auth/logout")
def auth_logout(user: UserProfile = Depends(_current_user)) -> Dict[str, str]:
    session_ids = [sid for sid, session in SESSIONS.items() if session.user_id == user.user_id]
    for session_id in session_ids:
        SESSIONS.pop(session_id, None)
    return {"status": "logged_out"}


@app.get("/auth/me", response_model=AuthMeResponse)
def auth_me(user: UserProfile = Depends(_current_user)) -> AuthMeResponse:
    return AuthMeResponse(user=user)


@app.post("/auth/change-password")
def auth_change_password(
    payload: ChangePasswordRequest,
    current: SessionRecord = Depends(_current_session),
    _: None = Depends(_rate_limit("auth", limit=10, window_seconds=60)),
) -> Dict[str, str]:
    _ensure_password_strength(payload.new_password)
    with db_session() as session:
        user = session.get(User, current.user_id)
        if user is None:
            raise HTTPException(status_code=401, detail="Invalid auth user.")
        if not _verify_password(payload.current_password, user):
            raise HTTPException(status_code=400, detail="Current password is incorrect.")
        record = _hash_password(payload.new_password)
        user.password_salt = record.salt
        user.password_digest = record.digest
    for session_id, auth_session in list(SESSIONS.items()):
        if auth_session.user_id == current.user_id and session_id != current.session_id:
            SESSIONS.pop(session_id, None)
    AUTH_LOGGER.info("password_changed user_id=%s", current.user_id)
    return {"status": "password_changed"}


@app.get("/auth/status", response_model=AuthStatusResponse)
def auth_status() -> AuthStatusResponse:
    return AuthStatusResponse(methods=get_auth_handler().methods)


@app.post("/auth/oauth/start", response_model=OAuthStartResponse)
def auth_oauth_start(
    payload: OAuthStartRequest,
    _: None = Depends(_rate_limit("auth", limit=10, window_seconds=60)),
) -> OAuthStartResponse:
    provider = payload.provider.lower()
    config = get_auth_handler().oauth_providers.get(provider)
    if config is None:
        raise HTTPException(status_code=400, detail="Unsupported OAuth provider.")
    now = int(time.time())
    for stale in [
        key
        for key, value in OAUTH_STATES.items()
        if now - int(value["created_at"]) > AUTH_STATE_TTL_SECONDS
    ]:
        OAUTH_STATES.pop(stale, None)
    state = secrets.token_urlsafe(16)
    OAUTH_STATES[state] = {"provider": provider, "created_at": str(now)}
    query = {
        "response_type": "code",
        "client_id": config.client_id,
        "redirect_uri": OAUTH_REDIRECT_URI,
        "scope": " ".join(config.scopes),
        "state": state,
    }
    return OAuthStartResponse(
        provider=provider,
        auth_url=f"{config.authorization_url}?{urlencode(query)}",
        state=state,
    )


def _oauth_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=10.0)


async def _fetch_oauth_identity(config: AuthProviderConfig, code: str) -> OAuthIdentity:
    token_payload = {
        "client_id": config.client_id,
        "client_secret": config.client_secret,
        "code": code,
        "redirect_uri": OAUTH_REDIRECT_URI,
        "grant_type": "authorization_code",
    }
    async with _oauth_client() as client:
        try:
            token_response = await client.post(
                config.token_url, data=token_payload, headers={"Accept": "application/json"}
            )
            token_data = token_response.json() if token_response.status_code < 400 else None
        except (httpx.HTTPError, ValueError) as exc:
            AUTH_LOGGER.warning(
                "oauth_token_exchange_error provider=%s error=%s", config.provider_id, exc
            )
            token_data = None
        if not isinstance(token_data, dict):
            raise HTTPException(status_code=502, detail="OAuth token exchange failed.")
        access_token = token_data.get("access_token")
        if not access_token:
            raise HTTPException(status_code=502, detail="OAuth access token missing.")
        try:
            user_response = await client.get(
                config.userinfo_url, headers={"Authorization": f"Bearer {access_token}"}
            )
            user_data = user_response.json() if user_response.status_code < 400 else None
        except (httpx.HTTPError, ValueError) as exc:
            AUTH_LOGGER.warning(
                "oauth_user_lookup_error provider=%s error=%s", config.provider_id, exc
            )
            user_data = None
        if not isinstance(user_data, dict):
            raise HTTPException(status_code=502, detail="OAuth user lookup failed.")
    return OAuthIdentity(
        email=user_data.get("email"),
        name=user_data.get("name") or user_data.get("given_name"),
    )


def _find_or_create_oauth_user(session: Session, email: str, name: Optional[str]) -> User:
    normalized = _normalize_email(email)
    existing = session.scalar(select(User).where(User.email == normalized))
    if existing is not None:
        if name and not existing.name:
            existing.name = name
        return existing
    user = User(id=uuid.uuid4().hex, email=normalized, name=name)
    session.add(user)
    session.flush()
    session.add(ChatSettings(user_id=user.id, tag_styles={}))
    AUTH_LOGGER.info("user_registered user_id=%s method=oauth", user.id)
    return user


def _oauth_login(email: str, name: Optional[str]) -> str:
    with db_session() as session:
        user = _find_or_create_oauth_user(session, email, name)
        user_id = user.id
    return _encode_token(_create_session(user_id))


@app.get("/auth/oauth/callback")
async def auth_oauth_callback(
    provider: str,
    code: str,
    state: str,
    _: None = Depends(_rate_limit("auth", limit=10, window_seconds=60)),
) -> RedirectResponse:
    provider = provider.lower()
    state_payload = OAUTH_STATES.pop(state, None)
    if not state_payload or state_payload.get("provider") != provider:
        raise HTTPException(status_code=400, detail="Invalid OAuth state.")
    if int(time.time()) - int(state_payload.get("created_at", "0")) > AUTH_STATE_TTL_SECONDS:
        raise HTTPException(status_code=400, detail="OAuth state expired.")
    config = get_auth_handler().oauth_providers.get(provider)
    if config is None:
        raise HTTPException(status_code=400, detail="Unsupported OAuth provider.")

    identity = await _fetch_oauth_identity(config, code)
    if not identity.email:
        raise HTTPException(status_code=400, detail="OAuth provider did not return an email.")
    token = await run_in_threadpool(_oauth_login, identity.email, identity.name)
    AUTH_LOGGER.info("oauth_login provider=%s", provider)

    redirect_url = urlparse(FRONTEND_OAUTH_REDIRECT)
    query_params = dict(parse_qsl(redirect_url.query))
    query_params["token"] = token
    return RedirectResponse(url=urlunparse(redirect_url._replace(query=urlencode(query_params))))


@app.get("/characters", response_model=CharacterListResponse)
def characters_list(
    favorite: Optional[bool] = None,
    tag_id: Optional[str] = None,
    user: UserProfile = Depends(_current_user),
) -> CharacterListResponse:
    with db_session() as session:
        query = select(Character).where(Character.user_id == user.user_id)
        if favorite is not None:
            query = query.where(Character.is_favorite == favorite)
        if tag_id:
            query = query.where(
                Character.id.in_(
                    select(EntityTag.entity_id).where(
                        EntityTag.tag_id == tag_id,
                        EntityTag.entity_type == TaggedEntity.CHARACTER,
                    )
                )
            )
        query = query.order_by(Character.is_favorite.desc(), Character.updated_at.desc())
        characters = [_character_record(session, c) for c in session.scalars(query)]
    return CharacterListResponse(characters=characters)


@app.post("/characters", response_model=CharacterRecord, status_code=201)
def characters_create(
    payload: CharacterCreateRequest,
    user: UserProfile = Depends(_current_user),
) -> CharacterRecord:
    with db_session() as session:
        if payload.default_connection_profile_id:
            _owned(
                session,
                ConnectionProfile,
                payload.default_connection_profile_id,
                user.user_id,
                "Connection profile",
            )
        character = Character(id=uuid.uuid4().hex, user_id=user.user_id, **payload.model_dump())
        session.add(character)
        session.flush()
        return _character_record(session, character)


@app.post("/characters/import", response_model=CharacterRecord, status_code=201)
def characters_import(
    payload: CharacterImportRequest,
    user: UserProfile = Depends(_current_user),
) -> CharacterRecord:
    try:
        imported = import_st_character(payload.card)
    except CardFormatError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    with db_session() as session:
        character = Character(id=uuid.uuid4().hex, user_id=user.user_id, **imported)
        session.add(character)
        session.flush()
        return _character_record(session, character)


@app.post("/characters/import/png", response_model=CharacterRecord, status_code=201)
def characters_import_png(
    file: UploadFile = File(...),
    user: UserProfile = Depends(_current_user),
) -> CharacterRecord:
    content = _read_upload(file)
    try:
        card = parse_st_character_png(content)
        if card is None:
            raise CardFormatError("No character data found in PNG.")
        imported = import_st_character(card)
    except CardFormatError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    with db_session() as session:
        character = Character(id=uuid.uuid4().hex, user_id=user.user_id, **imported)
        session.add(character)
        session.flush()
        avatar = _store_file(
            session,
            user.user_id,
            file.filename or f"{character.name}.png",
            "image/png",
            content,
            FileCategory.AVATAR,
            source=FileSource.IMPORTED,
            character_id=character.id,
        )
        character.avatar_file_id = avatar.id
        return _character_record(session, character)


@app.get("/characters/{character_id}", response_model=CharacterRecord)
def characters_get(
    character_id: str,
    user: UserProfile = Depends(_current_user),
) -> CharacterRecord:
    with db_session() as session:
        character = _owned(session, Character, character_id, user.user_id, "Character")
        return _character_record(session, character)


@app.put("/characters/{character_id}", response_model=CharacterRecord)
def characters_update(
    character_id: str,
    payload: CharacterUpdateRequest,
    user: UserProfile = Depends(_current_user),
) -> CharacterRecord:
    with db_session() as session:
        character = _owned(session, Character, character_id, user.user_id, "Character")
        changes = payload.model_dump(exclude_unset=True)
        if changes.get("default_connection_profile_id"):
            _owned(
                session,
                ConnectionProfile,
                changes["default_connection_profile_id"],
                user.user_id,
                "Connection profile",
            )
        for key, value in changes.items():
            setattr(character, key, value)
        session.flush()
        return _character_record(session, character)


@app.post("/characters/{character_id}/favorite", response_model=CharacterRecord)
def characters_toggle_favorite(
    character_id: str,
    user: UserProfile = Depends(_current_user),
) -> CharacterRecord:
    with db_session() as session:
        character = _owned(session, Character, character_id, user.user_id, "Character")
        character.is_favorite = not character.is_favorite
        session.flush()
        return _character_record(session, character)


@app.delete("/characters/{character_id}")
def characters_delete(
    character_id: str,
    user: UserProfile = Depends(_current_user),
) -> Dict[str, str]:
    with db_session() as session:
        character = _owned(session, Character, character_id, user.user_id, "Character")
        for chat in character.chats:
            _drop_entity_tags(session, TaggedEntity.CHAT, chat.id)
        _drop_entity_tags(session, TaggedEntity.CHARACTER, character.id)
        session.delete(character)
    return {"status": "deleted"}


@app.get("/characters/{character_id}/export")
def characters_export(
    character_id: str,
    format: str = "json",
    user: UserProfile = Depends(_current_user),
):
    with db_session() as session:
        character = _owned(session, Character, character_id, user.user_id, "Character")
        if format == "json":
            return export_st_character(character)
        if format != "png":
            raise HTTPException(status_code=400, detail="Unsupported export format.")
        avatar = session.get(StoredFile, character.avatar_file_id) if character.avatar_file_id else None
        if avatar is None or avatar.mime_type != "image/png":
            raise HTTPException(status_code=400, detail="A PNG avatar is required for PNG export.")
        avatar_path = _storage_path(avatar.relative_path)
        if not os.path.isfile(avatar_path):
            raise _not_found("Avatar file")
        with open(avatar_path, "rb") as handle:
            try:
                data = create_st_character_png(character, handle.read())
            except CardFormatError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
        filename = f"{character.name}.png"
    return StreamingResponse(
        iter([data]),
        media_type="image/png",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/characters/{character_id}/avatar", response_model=CharacterRecord)
def characters_upload_avatar(
    character_id: str,
    file: UploadFile = File(...),
    user: UserProfile = Depends(_current_user),
) -> CharacterRecord:
    content = _read_upload(file)
    with db_session() as session:
        character = _owned(session, Character, character_id, user.user_id, "Character")
        stored = _store_file(
            session,
            user.user_id,
            file.filename or "avatar",
            file.content_type or "application/octet-stream",
            content,
            FileCategory.AVATAR,
            character_id=character.id,
        )
        character.avatar_file_id = stored.id
        session.flush()
        return _character_record(session, character)


@app.get("/characters/{character_id}/personas", response_model=List[CharacterPersonaRecord])
def characters_personas(
    character_id: str,
    user: UserProfile = Depends(_current_user),
) -> List[CharacterPersonaRecord]:
    with db_session() as session:
        character = _owned(session, Character, character_id, user.user_id, "Character")
        return [
            CharacterPersonaRecord(
                persona=_persona_record(session, link.persona),
                is_default=bool(link.is_default),
            )
            for link in character.persona_links
        ]


@app.post("/characters/{character_id}/personas", response_model=List[CharacterPersonaRecord])
def characters_link_persona(
    character_id: str,
    payload: CharacterPersonaLinkRequest,
    user: UserProfile = Depends(_current_user),
) -> List[CharacterPersonaRecord]:
    with db_session() as session:
        character = _owned(session, Character, character_id, user.user_id, "Character")
        _owned(session, Persona, payload.persona_id, user.user_id, "Persona")
        link = session.get(CharacterPersona, (character.id, payload.persona_id))
        if link is None:
            link = CharacterPersona(character_id=character.id, persona_id=payload.persona_id)
            character.persona_links.append(link)
        if payload.is_default:
            for other in character.persona_links:
                other.is_default = False
        link.is_default = payload.is_default
        session.flush()
        session.refresh(character)
        return [
            CharacterPersonaRecord(
                persona=_persona_record(session, item.persona),
                is_default=bool(item.is_default),
            )
            for item in character.persona_links
        ]


@app.get("/personas", response_model=PersonaListResponse)
def personas_list(user: UserProfile = Depends(_current_user)) -> PersonaListResponse:
    with db_session() as session:
        personas = session.scalars(
            select(Persona).where(Persona.user_id == user.user_id).order_by(Persona.name)
        )
        return PersonaListResponse(personas=[_persona_record(session, p) for p in personas])


@app.post("/personas", response_model=PersonaRecord, status_code=201)
def personas_create(
    payload: PersonaCreateRequest,
    user: UserProfile = Depends(_current_user),
) -> PersonaRecord:
    with db_session() as session:
        persona = Persona(id=uuid.uuid4().hex, user_id=user.user_id, **payload.model_dump())
        session.add(persona)
        session.flush()
        return _persona_record(session, persona)


@app.post("/personas/import", status_code=201)
def personas_import(
    payload: PersonaImportRequest,
    user: UserProfile = Depends(_current_user),
):
    data = payload.persona_data
    if is_multi_persona_backup(data):
        entries = convert_multi_persona_backup(data)
        if not entries:
            raise HTTPException(status_code=400, detail="No personas found in backup file.")
    else:
        entries = [data]
    try:
        imported = [import_st_persona(entry) for entry in entries]
    except CardFormatError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    with db_session() as session:
        created = []
        for values in imported:
            persona = Persona(id=uuid.uuid4().hex, user_id=user.user_id, **values)
            session.add(persona)
            session.flush()
            created.append(_persona_record(session, persona))
    if not is_multi_persona_backup(data):
        return created[0]
    count = len(created)
    return PersonaImportResponse(
        personas=created,
        count=count,
        message=f"Successfully imported {count} persona{'' if count == 1 else 's'}",
    )


@app.get("/personas/{persona_id}", response_model=PersonaRecord)
def personas_get(persona_id: str, user: UserProfile = Depends(_current_user)) -> PersonaRecord:
    with db_session() as session:
        persona = _owned(session, Persona, persona_id, user.user_id, "Persona")
        return _persona_record(session, persona)


@app.put("/personas/{persona_id}", response_model=PersonaRecord)
def personas_update(
    persona_id: str,
    payload: PersonaUpdateRequest,
    user: UserProfile = Depends(_current_user),
) -> PersonaRecord:
    with db_session() as session:
        persona = _owned(session, Persona, persona_id, user.user_id, "Persona")
        for key, value in payload.model_dump(exclude_unset=True).items():
            setattr(persona, key, value)
        session.flush()
        return _persona_record(session, persona)


@app.delete("/personas/{persona_id}")
def personas_delete(persona_id: str, user: UserProfile = Depends(_current_user)) -> Dict[str, str]:
    with db_session() as session:
        persona = _owned(session, Persona, persona_id, user.user_id, "Persona")
        session.execute(update(Chat).where(Chat.persona_id == persona.id).values(persona_id=None))
        _drop_entity_tags(session, TaggedEntity.PERSONA, persona.id)
        session.delete(persona)
    return {"status": "deleted"}


@app.get("/personas/{persona_id}/export")
def personas_export(persona_id: str, user: UserProfile = Depends(_current_user)) -> Dict[str, object]:
    with db_session() as session:
        persona = _owned(session, Persona, persona_id, user.user_id, "Persona")
        return export_st_persona(persona)


@app.get("/tags", response_model=TagListResponse)
def tags_list(user: UserProfile = Depends(_current_user)) -> TagListResponse:
    with db_session() as session:
        styles = _chat_settings(session, user.user_id).tag_styles or {}
        tags = session.scalars(select(Tag).where(Tag.user_id == user.user_id).order_by(Tag.name_lower))
        return TagListResponse(tags=[_tag_record(tag, styles) for tag in tags])


@app.post("/tags", response_model=TagRecord, status_code=201)
def tags_create(payload: TagCreateRequest, user: UserProfile = Depends(_current_user)) -> TagRecord:
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Tag name is required.")
    with db_session() as session:
        existing = session.scalar(
            select(Tag).where(Tag.user_id == user.user_id, Tag.name_lower == name.lower())
        )
        if existing is not None:
            raise HTTPException(status_code=409, detail="Tag already exists.")
        tag = Tag(id=uuid.uuid4().hex, user_id=user.user_id, name=name, name_lower=name.lower())
        session.add(tag)
        session.flush()
        return _tag_record(tag, {})


@app.put("/tags/{tag_id}", response_model=TagRecord)
def tags_rename(
    tag_id: str,
    payload: TagCreateRequest,
    user: UserProfile = Depends(_current_user),
) -> TagRecord:
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Tag name is required.")
    with db_session() as session:
        tag = _owned(session, Tag, tag_id, user.user_id, "Tag")
        clash = session.scalar(
            select(Tag).where(
                Tag.user_id == user.user_id,
                Tag.name_lower == name.lower(),
                Tag.id != tag.id,
            )
        )
        if clash is not None:
            raise HTTPException(status_code=409, detail="Tag already exists.")
        tag.name = name
        tag.name_lower = name.lower()
        session.flush()
        return _tag_record(tag, _chat_settings(session, user.user_id).tag_styles or {})


@app.delete("/tags/{tag_id}")
def tags_delete(tag_id: str, user: UserProfile = Depends(_current_user)) -> Dict[str, str]:
    with db_session() as session:
        tag = _owned(session, Tag, tag_id, user.user_id, "Tag")
        session.execute(delete(EntityTag).where(EntityTag.tag_id == tag.id))
        settings = _chat_settings(session, user.user_id)
        if tag.id in (settings.tag_styles or {}):
            settings.tag_styles = {k: v for k, v in settings.tag_styles.items() if k != tag.id}
        session.delete(tag)
    return {"status": "deleted"}


TAGGABLE_MODELS = {
    TaggedEntity.CHARACTER: (Character, "Character"),
    TaggedEntity.PERSONA: (Persona, "Persona"),
    TaggedEntity.CHAT: (Chat, "Chat"),
    TaggedEntity.PROFILE: (ConnectionProfile, "Connection profile"),
}


@app.post("/tags/{tag_id}/attach")
def tags_attach(
    tag_id: str,
    payload: TagLinkRequest,
    user: UserProfile = Depends(_current_user),
) -> Dict[str, object]:
    with db_session() as session:
        tag = _owned(session, Tag, tag_id, user.user_id, "Tag")
        model, label = TAGGABLE_MODELS[payload.entity_type]
        _owned(session, model, payload.entity_id, user.user_id, label)
        key = (tag.id, payload.entity_type, payload.entity_id)
        if session.get(EntityTag, key) is None:
            session.add(
                EntityTag(tag_id=tag.id, entity_type=payload.entity_type, entity_id=payload.entity_id)
            )
            session.flush()
        return {"tag_ids": _tag_ids(session, payload.entity_type, payload.entity_id)}


@app.post("/tags/{tag_id}/detach")
def tags_detach(
    tag_id: str,
    payload: TagLinkRequest,
    user: UserProfile = Depends(_current_user),
) -> Dict[str, object]:
    with db_session() as session:
        tag = _owned(session, Tag, tag_id, user.user_id, "Tag")
        model, label = TAGGABLE_MODELS[payload.entity_type]
        _owned(session, model, payload.entity_id, user.user_id, label)
        link = session.get(EntityTag, (tag.id, payload.entity_type, payload.entity_id))
        if link is not None:
            session.delete(link)
            session.flush()
        return {"tag_ids": _tag_ids(session, payload.entity_type, payload.entity_id)}


@app.get("/chat-settings", response_model=ChatSettingsRecord)
def chat_settings_get(user: UserProfile = Depends(_current_user)) -> ChatSettingsRecord:
    with db_session() as session:
        settings = _chat_settings(session, user.user_id)
        return ChatSettingsRecord(
            avatar_display_mode=settings.avatar_display_mode,
            tag_styles=merge_tag_style_map(settings.tag_styles),
        )


@app.put("/chat-settings", response_model=ChatSettingsRecord)
def chat_settings_update(
    payload: ChatSettingsUpdateRequest,
    user: UserProfile = Depends(_current_user),
) -> ChatSettingsRecord:
    with db_session() as session:
        settings = _chat_settings(session, user.user_id)
        if payload.avatar_display_mode is not None:
            settings.avatar_display_mode = payload.avatar_display_mode
        if payload.tag_styles is not None:
            owned = set(session.scalars(select(Tag.id).where(Tag.user_id == user.user_id)))
            unknown = set(payload.tag_styles) - owned
            if unknown:
                raise HTTPException(status_code=404, detail="Tag not found.")
            styles = dict(settings.tag_styles or {})
            for tag_id, patch in payload.tag_styles.items():
                styles[tag_id] = merge_with_default_tag_style(patch).model_dump()
            settings.tag_styles = styles
        session.flush()
        return ChatSettingsRecord(
            avatar_display_mode=settings.avatar_display_mode,
            tag_styles=merge_tag_style_map(settings.tag_styles),
        )


def _api_key_record(key: ApiKey, user_id: str) -> ApiKeyRecord:
    try:
        masked = mask_api_key(decrypt_api_key(key.ciphertext, key.iv, key.auth_tag, user_id))
    except ValueError:
        masked = "********"
    return ApiKeyRecord(
        id=key.id,
        label=key.label,
        provider=key.provider,
        masked_key=masked,
        is_active=bool(key.is_active),
        last_used=as_utc(key.last_used),
        created_at=as_utc(key.created_at),
    )


@app.get("/api-keys", response_model=ApiKeyListResponse)
def api_keys_list(user: UserProfile = Depends(_current_user)) -> ApiKeyListResponse:
    with db_session() as session:
        keys = session.scalars(
            select(ApiKey).where(ApiKey.user_id == user.user_id).order_by(ApiKey.created_at)
        )
        return ApiKeyListResponse(api_keys=[_api_key_record(key, user.user_id) for key in keys])


@app.post("/api-keys", response_model=ApiKeyRecord, status_code=201)
def api_keys_create(
    payload: ApiKeyCreateRequest,
    user: UserProfile = Depends(_current_user),
) -> ApiKeyRecord:
    plugins.initialize_plugins()
    if not plugins.PROVIDER_REGISTRY.has(payload.provider):
        raise HTTPException(status_code=400, detail=f"Unsupported provider: {payload.provider}")
    ciphertext, iv, auth_tag = encrypt_api_key(payload.api_key.strip(), user.user_id)
    with db_session() as session:
        key = ApiKey(
            id=uuid.uuid4().hex,
            user_id=user.user_id,
            label=payload.label,
            provider=payload.provider,
            ciphertext=ciphertext,
            iv=iv,
            auth_tag=auth_tag,
            is_active=True,
        )
        session.add(key)
        session.flush()
        return _api_key_record(key, user.user_id)


@app.delete("/api-keys/{key_id}")
def api_keys_delete(key_id: str, user: UserProfile = Depends(_current_user)) -> Dict[str, str]:
    with db_session() as session:
        key = _owned(session, ApiKey, key_id, user.user_id, "API key")
        session.execute(
            update(ConnectionProfile)
            .where(ConnectionProfile.api_key_id == key.id)
            .values(api_key_id=None)
        )
        session.delete(key)
    return {"status": "deleted"}


@app.get("/providers", response_model=List[ProviderInfo])
def providers_list(user: UserProfile = Depends(_current_user)) -> List[ProviderInfo]:
    plugins.initialize_plugins()
    providers = []
    for name in plugins.PROVIDER_REGISTRY.names():
        manifest = plugins.PROVIDER_REGISTRY.manifest(name)
        providers.append(
            ProviderInfo(
                provider=name,
                plugin=manifest.name,
                title=manifest.title,
                requires_base_url=manifest.requires_base_url,
                requires_api_key=manifest.requires_api_key,
            )
        )
    return providers


def _clear_default_profiles(session: Session, user_id: str, keep_id: str) -> None:
    session.execute(
        update(ConnectionProfile)
        .where(ConnectionProfile.user_id == user_id, ConnectionProfile.id != keep_id)
        .values(is_default=False)
    )


@app.get("/profiles", response_model=ProfileListResponse)
def profiles_list(user: UserProfile = Depends(_current_user)) -> ProfileListResponse:
    with db_session() as session:
        profiles = session.scalars(
            select(ConnectionProfile)
            .where(ConnectionProfile.user_id == user.user_id)
            .order_by(ConnectionProfile.is_default.desc(), ConnectionProfile.name)
        )
        return ProfileListResponse(profiles=[_profile_record(session, p) for p in profiles])


@app.post("/profiles", response_model=ProfileRecord, status_code=201)
def profiles_create(
    payload: ProfileCreateRequest,
    user: UserProfile = Depends(_current_user),
) -> ProfileRecord:
    _create_provider(payload.provider, payload.base_url)
    with db_session() as session:
        if payload.api_key_id:
            _owned(session, ApiKey, payload.api_key_id, user.user_id, "API key")
        profile = ConnectionProfile(id=uuid.uuid4().hex, user_id=user.user_id, **payload.model_dump())
        session.add(profile)
        session.flush()
        if profile.is_default:
            _clear_default_profiles(session, user.user_id, profile.id)
        return _profile_record(session, profile)


@app.put("/profiles/{profile_id}", response_model=ProfileRecord)
def profiles_update(
    profile_id: str,
    payload: ProfileUpdateRequest,
    user: UserProfile = Depends(_current_user),
) -> ProfileRecord:
    with db_session() as session:
        profile = _owned(session, ConnectionProfile, profile_id, user.user_id, "Connection profile")
        changes = payload.model_dump(exclude_unset=True)
        if changes.get("api_key_id"):
            _owned(session, ApiKey, changes["api_key_id"], user.user_id, "API key")
        for key, value in changes.items():
            setattr(profile, key, value)
        _create_provider(profile.provider, profile.base_url)
        session.flush()
        if profile.is_default:
            _clear_default_profiles(session, user.user_id, profile.id)
        return _profile_record(session, profile)


@app.delete("/profiles/{profile_id}")
def profiles_delete(profile_id: str, user: UserProfile = Depends(_current_user)) -> Dict[str, str]:
    with db_session() as session:
        profile = _owned(session, ConnectionProfile, profile_id, user.user_id, "Connection profile")
        session.execute(
            update(Character)
            .where(Character.default_connection_profile_id == profile.id)
            .values(default_connection_profile_id=None)
        )
        _drop_entity_tags(session, TaggedEntity.PROFILE, profile.id)
        session.delete(profile)
    return {"status": "deleted"}


def _profile_api_key(user_id: str, api_key_id: Optional[str]) -> str:
    with db_session() as session:
        return _decrypt_profile_key(session, user_id, api_key_id)


@app.post("/profiles/test-connection", response_model=ConnectionTestResponse)
async def profiles_test_connection(
    payload: ProviderTestRequest,
    user: UserProfile = Depends(_current_user),
    _: None = Depends(_rate_limit("llm", limit=30, window_seconds=60)),
) -> ConnectionTestResponse:
    api_key = await run_in_threadpool(_profile_api_key, user.user_id, payload.api_key_id)
    llm = _create_provider(payload.provider, payload.base_url)
    valid = await llm.validate_api_key(api_key)
    if not valid:
        return ConnectionTestResponse(
            valid=False,
            provider=payload.provider,
            message=f"Could not connect to {payload.provider} with these settings.",
        )
    models = await llm.get_available_models(api_key)
    return ConnectionTestResponse(
        valid=True,
        provider=payload.provider,
        models=models,
        message=f"Connected to {payload.provider}.",
    )


@app.post("/profiles/test-message", response_model=MessageTestResponse)
async def profiles_test_message(
    payload: ProviderTestRequest,
    user: UserProfile = Depends(_current_user),
    _: None = Depends(_rate_limit("llm", limit=30, window_seconds=60)),
) -> MessageTestResponse:
    if not payload.model_name:
        raise HTTPException(status_code=400, detail="Model name is required.")
    api_key = await run_in_threadpool(_profile_api_key, user.user_id, payload.api_key_id)
    llm = _create_provider(payload.provider, payload.base_url)
    params = LLMParams(
        model=payload.model_name,
        messages=[LLMMessage(role="user", content=payload.message or TEST_MESSAGE)],
        **profile_params(payload.parameters),
    )
    response = await llm.send_message(params, api_key)
    return MessageTestResponse(
        provider=payload.provider,
        model=payload.model_name,
        content=response.content,
        finish_reason=response.finish_reason,
        usage=response.usage,
    )


@app.get("/profiles/openrouter-check")
def profiles_openrouter_check(user: UserProfile = Depends(_current_user)) -> Dict[str, object]:
    candidates = check_openrouter_profiles(user.user_id)
    return {"profiles": [candidate.model_dump() for candidate in candidates]}


@app.post("/profiles/convert-openrouter", response_model=ProfileConversionResult)
def profiles_convert_openrouter(
    user: UserProfile = Depends(_current_user),
) -> ProfileConversionResult:
    return convert_openrouter_profiles(user.user_id)


def _chat_profile(
    session: Session,
    user_id: str,
    character: Character,
    requested_id: Optional[str],
) -> ConnectionProfile:
    profile_id = requested_id or character.default_connection_profile_id
    if profile_id:
        return _owned(session, ConnectionProfile, profile_id, user_id, "Connection profile")
    profile = session.scalar(
        select(ConnectionProfile).where(
            ConnectionProfile.user_id == user_id,
            ConnectionProfile.is_default.is_(True),
        )
    )
    if profile is None:
        raise HTTPException(status_code=400, detail="A connection profile is required.")
    return profile


def _chat_persona(session: Session, user_id: str, character: Character, persona_id: Optional[str]):
    if persona_id:
        return _owned(session, Persona, persona_id, user_id, "Persona")
    return _default_persona(character)


@app.get("/chats", response_model=ChatListResponse)
def chats_list(
    character_id: Optional[str] = None,
    user: UserProfile = Depends(_current_user),
) -> ChatListResponse:
    with db_session() as session:
        query = select(Chat).where(Chat.user_id == user.user_id)
        if character_id:
            query = query.where(Chat.character_id == character_id)
        query = query.order_by(Chat.updated_at.desc())
        return ChatListResponse(chats=[_chat_record(chat) for chat in session.scalars(query)])


def _chat_seed(payload: ChatCreateRequest, user_id: str) -> ChatSeed:
    with db_session() as session:
        character = _owned(session, Character, payload.character_id, user_id, "Character")
        persona = _chat_persona(session, user_id, character, payload.persona_id)
        profile = _chat_profile(session, user_id, character, payload.connection_profile_id)
        return ChatSeed(
            character_name=character.name,
            persona_id=persona.id if persona else None,
            profile_id=profile.id,
            provider=profile.provider,
            base_url=profile.base_url,
            model_name=profile.model_name,
            api_key=_decrypt_profile_key(session, user_id, profile.api_key_id),
            system_prompt=build_system_prompt(character, persona),
            first_message=(character.first_message or "").strip(),
            settings=profile_params(profile.parameters),
        )


def _create_chat(
    payload: ChatCreateRequest, user_id: str, seed: ChatSeed, first_message: str
) -> ChatDetailResponse:
    with db_session() as session:
        chat = Chat(
            id=uuid.uuid4().hex,
            user_id=user_id,
            character_id=payload.character_id,
            persona_id=seed.persona_id,
            connection_profile_id=seed.profile_id,
            title=payload.title or f"Chat with {seed.character_name}",
            message_count=0,
        )
        session.add(chat)
        session.flush()
        if first_message:
            _append_message(session, chat, MessageRole.ASSISTANT, first_message)
        return ChatDetailResponse(
            chat=_chat_record(chat),
            messages=[_message_record(message) for message in chat.messages],
        )


@app.post("/chats", response_model=ChatDetailResponse, status_code=201)
async def chats_create(
    payload: ChatCreateRequest,
    user: UserProfile = Depends(_current_user),
) -> ChatDetailResponse:
    seed = await run_in_threadpool(_chat_seed, payload, user.user_id)
    first_message = seed.first_message
    if not first_message:
        try:
            first_message = await generate_greeting_message(
                system_prompt=seed.system_prompt,
                character_name=seed.character_name,
                provider=seed.provider,
                model_name=seed.model_name,
                api_key=seed.api_key,
                base_url=seed.base_url,
                temperature=seed.settings.get("temperature"),
                max_tokens=seed.settings.get("max_tokens"),
                top_p=seed.settings.get("top_p"),
            )
        except (LLMProviderError, ValueError) as exc:
            LOGGER.warning(
                "greeting_failed character_id=%s provider=%s error=%s",
                payload.character_id,
                seed.provider,
                exc,
            )
            first_message = ""
    return await run_in_threadpool(_create_chat, payload, user.user_id, seed, first_message)


@app.post("/chats/import", response_model=ChatDetailResponse, status_code=201)
def chats_import(
    payload: ChatImportRequest,
    user: UserProfile = Depends(_current_user),
) -> ChatDetailResponse:
    try:
        imported = import_st_chat(payload.chat_data)
    except CardFormatError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    with db_session() as session:
        character = _owned(session, Character, payload.character_id, user.user_id, "Character")
        persona = _chat_persona(session, user.user_id, character, payload.persona_id)
        profile = _chat_profile(session, user.user_id, character, payload.connection_profile_id)
        chat = Chat(
            id=uuid.uuid4().hex,
            user_id=user.user_id,
            character_id=character.id,
            persona_id=persona.id if persona else None,
            connection_profile_id=profile.id,
            title=payload.title or f"Chat with {character.name}",
            message_count=0,
            silly_tavern_metadata=imported["metadata"],
        )
        session.add(chat)
        session.flush()
        for entry in imported["messages"]:
            _append_message(
                session,
                chat,
                entry["role"],
                entry["content"],
                created_at=entry["created_at"],
                swipe_group_id=entry["swipe_group_id"],
                swipe_index=entry["swipe_index"],
                raw_response=entry["raw_response"],
            )
        LOGGER.info(
            "chat_imported user_id=%s chat_id=%s messages=%s",
            user.user_id,
            chat.id,
            len(imported["messages"]),
        )
        return ChatDetailResponse(
            chat=_chat_record(chat),
            messages=[_message_record(message) for message in chat.messages],
        )


@app.get("/chats/{chat_id}", response_model=ChatDetailResponse)
def chats_get(chat_id: str, user: UserProfile = Depends(_current_user)) -> ChatDetailResponse:
    with db_session() as session:
        chat = _owned(session, Chat, chat_id, user.user_id, "Chat")
        return ChatDetailResponse(
            chat=_chat_record(chat),
            messages=[_message_record(message) for message in chat.messages],
        )


@app.get("/chats/{chat_id}/export")
def chats_export(chat_id: str, user: UserProfile = Depends(_current_user)) -> Dict[str, object]:
    with db_session() as session:
        chat = _owned(session, Chat, chat_id, user.user_id, "Chat")
        persona = session.get(Persona, chat.persona_id) if chat.persona_id else None
        user_name = persona.name if persona else (user.name or "User")
        return export_st_chat(chat, chat.messages, chat.character.name, user_name)


@app.delete("/chats/{chat_id}")
def chats_delete(chat_id: str, user: UserProfile = Depends(_current_user)) -> Dict[str, str]:
    with db_session() as session:
        chat = _owned(session, Chat, chat_id, user.user_id, "Chat")
        _drop_entity_tags(session, TaggedEntity.CHAT, chat.id)
        session.delete(chat)
    return {"status": "deleted"}


def _chat_file(session: Session, chat: Chat, user_id: str, file_id: str) -> StoredFile:
    stored = _owned(session, StoredFile, file_id, user_id, "File")
    if stored.chat_id and stored.chat_id != chat.id:
        raise HTTPException(status_code=400, detail="File belongs to a different chat.")
    return stored


def _file_attachment(stored: StoredFile) -> FileAttachment:
    full_path = _storage_path(stored.relative_path)
    if not os.path.isfile(full_path):
        raise _not_found("File")
    with open(full_path, "rb") as handle:
        data = base64.b64encode(handle.read()).decode("ascii")
    return FileAttachment(
        id=stored.id,
        filename=stored.filename,
        mime_type=stored.mime_type,
        size=stored.size,
        data=data,
    )


def _prepare_reply(chat_id: str, user_id: str, content: str, file_ids: List[str]) -> PendingReply:
    with db_session() as session:
        chat = _owned(session, Chat, chat_id, user_id, "Chat", for_update=True)
        profile = _owned(
            session,
            ConnectionProfile,
            chat.connection_profile_id,
            user_id,
            "Connection profile",
        )
        persona = session.get(Persona, chat.persona_id) if chat.persona_id else None
        api_key = _decrypt_profile_key(session, user_id, profile.api_key_id)
        stored_files = [
            _chat_file(session, chat, user_id, file_id) for file_id in dict.fromkeys(file_ids)
        ]
        attachments = [_file_attachment(stored) for stored in stored_files]
        message = _append_message(
            session,
            chat,
            MessageRole.USER,
            content,
            attachments=[stored.id for stored in stored_files],
        )
        for stored in stored_files:
            stored.chat_id = chat.id
            stored.message_id = message.id
        params = LLMParams(
            model=profile.model_name,
            messages=history_messages(
                build_system_prompt(chat.character, persona),
                chat.messages,
                profile.provider,
                profile.model_name,
                attachments,
            ),
            **profile_params(profile.parameters),
        )
        return PendingReply(
            params=params,
            api_key=api_key,
            provider=profile.provider,
            base_url=profile.base_url,
            user_message=_message_record(message),
        )


def _store_reply(chat_id: str, content: str, usage: LLMUsage) -> MessageRecord:
    with db_session() as session:
        chat = session.get(Chat, chat_id, with_for_update=True)
        if chat is None:
            raise _not_found("Chat")
        message = _append_message(
            session,
            chat,
            MessageRole.ASSISTANT,
            content,
            token_count=usage.completion_tokens or None,
        )
        return _message_record(message)


def _sse(payload: Dict[str, object]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


async def _stream_reply(
    chat_id: str,
    llm: LLMProvider,
    pending: PendingReply,
) -> AsyncIterator[str]:
    yield _sse({"user_message": pending.user_message.model_dump(mode="json")})
    parts: List[str] = []
    usage = LLMUsage()
    attachment_results: Optional[AttachmentResults] = None
    try:
        async for chunk in llm.stream_message(pending.params, pending.api_key):
            if chunk.content:
                parts.append(chunk.content)
                yield _sse({"content": chunk.content})
            if chunk.done:
                usage = chunk.usage or usage
                attachment_results = chunk.attachment_results
    except LLMProviderError as exc:
        yield _sse({"error": user_friendly_error(exc), "error_type": type(exc).__name__})
        return
    reply = await run_in_threadpool(_store_reply, chat_id, "".join(parts).strip(), usage)
    yield _sse(
        {
            "done": True,
            "assistant_message": reply.model_dump(mode="json"),
            "usage": usage.model_dump(),
            "attachment_results": (
                attachment_results.model_dump() if attachment_results is not None else None
            ),
        }
    )


@app.post("/chats/{chat_id}/messages")
async def chats_send_message(
    chat_id: str,
    payload: ChatMessageRequest,
    user: UserProfile = Depends(_current_user),
    _: None = Depends(_rate_limit("llm", limit=30, window_seconds=60)),
):
    content = payload.content.strip()
    if not content:
        raise HTTPException(status_code=400, detail="Message cannot be empty.")
    pending = await run_in_threadpool(
        _prepare_reply, chat_id, user.user_id, content, payload.file_ids
    )
    llm = _create_provider(pending.provider, pending.base_url)
    if payload.stream:
        return StreamingResponse(
            _stream_reply(chat_id, llm, pending),
            media_type="text/event-stream",
        )
    response = await llm.send_message(pending.params, pending.api_key)
    reply = await run_in_threadpool(_store_reply, chat_id, response.content.strip(), response.usage)
    return ChatReplyResponse(
        user_message=pending.user_message,
        assistant_message=reply,
        usage=response.usage,
        attachment_results=response.attachment_results,
    )


@app.get("/files", response_model=FileListResponse)
def files_list(
    category: Optional[FileCategory] = None,
    character_id: Optional[str] = None,
    user: UserProfile = Depends(_current_user),
) -> FileListResponse:
    with db_session() as session:
        query = select(StoredFile).where(StoredFile.user_id == user.user_id)
        if category is not None:
            query = query.where(StoredFile.category == category)
        if character_id:
            query = query.where(StoredFile.character_id == character_id)
        query = query.order_by(StoredFile.created_at.desc())
        return FileListResponse(files=[_file_record(item) for item in session.scalars(query)])


@app.post("/files/upload", response_model=FileRecord, status_code=201)
def files_upload(
    category: FileCategory = Form(...),
    character_id: Optional[str] = Form(None),
    chat_id: Optional[str] = Form(None),
    file: UploadFile = File(...),
    user: UserProfile = Depends(_current_user),
) -> FileRecord:
    content = _read_upload(file)
    with db_session() as session:
        if character_id:
            _owned(session, Character, character_id, user.user_id, "Character")
        if chat_id:
            _owned(session, Chat, chat_id, user.user_id, "Chat")
        stored = _store_file(
            session,
            user.user_id,
            file.filename or "",
            file.content_type or "application/octet-stream",
            content,
            category,
            character_id=character_id,
            chat_id=chat_id,
        )
        return _file_record(stored)


@app.get("/files/{file_id}")
def files_download(file_id: str, user: UserProfile = Depends(_current_user)) -> FileResponse:
    with db_session() as session:
        stored = _owned(session, StoredFile, file_id, user.user_id, "File")
        full_path = _storage_path(stored.relative_path)
        filename = stored.filename
        mime_type = stored.mime_type
    if not os.path.isfile(full_path):
        raise _not_found("File")
    return FileResponse(full_path, filename=filename, media_type=mime_type)


@app.delete("/files/{file_id}")
def files_delete(file_id: str, user: UserProfile = Depends(_current_user)) -> Dict[str, str]:
    with db_session() as session:
        stored = _owned(session, StoredFile, file_id, user.user_id, "File")
        relative_path = stored.relative_path
        session.execute(
            update(Character)
            .where(Character.avatar_file_id == stored.id)
            .values(avatar_file_id=None)
        )
        session.delete(stored)
        session.flush()
        shared = session.scalar(
            select(StoredFile.id).where(StoredFile.relative_path == relative_path).limit(1)
        )
    full_path = _storage_path(relative_path)
    if shared is None and os.path.isfile(full_path):
        os.remove(full_path)
    return {"status": "deleted"}


@app.post("/startup/initialize-plugins")
def startup_initialize_plugins():
    result: PluginInitializationResult = plugins.initialize_plugins()
    if not result.success:
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "Plugin initialization failed",
                "result": result.model_dump(mode="json"),
            },
        )
    return {"success": True, "result": result.model_dump(mode="json")}


@app.get("/startup/initialize-plugins")
def startup_plugin_state() -> Dict[str, object]:
    return {"success": True, "state": plugins.get_plugin_system_state()}


@app.get("/plugins")
def plugins_list(user: UserProfile = Depends(_current_user)) -> Dict[str, object]:
    plugins.initialize_plugins()
    return {
        "plugins": [plugin.describe() for plugin in plugins.PLUGIN_REGISTRY.all()],
        "stats": plugins.PLUGIN_REGISTRY.stats().model_dump(),
        "errors": [error.model_dump() for error in plugins.PLUGIN_REGISTRY.errors()],
    }


@app.put("/plugins/{name}")
def plugins_toggle(
    name: str,
    payload: PluginToggleRequest,
    user: UserProfile = Depends(_current_user),
) -> Dict[str, object]:
    try:
        plugin = plugins.set_plugin_enabled(name, payload.enabled)
    except KeyError as exc:
        raise _not_found("Plugin") from exc
    return plugin.describe()
