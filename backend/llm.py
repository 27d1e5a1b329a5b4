from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import AsyncIterator, Dict, List, Literal, Optional, Sequence, Tuple
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, Field

from backend.config import APP_TITLE, FRONTEND_ORIGIN, LLM_REQUEST_TIMEOUT_SECONDS, LOGGER

LLM_LOGGER = LOGGER.getChild("llm")

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1000
DEFAULT_TOP_P = 1.0
IMAGE_MIME_TYPES = ["image/jpeg", "image/png", "image/gif", "image/webp"]


class FileAttachment(BaseModel):
    id: str
    filename: str
    mime_type: str
    size: int = 0
    data: Optional[str] = None


class LLMMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str
    attachments: List[FileAttachment] = Field(default_factory=list)


class LLMParams(BaseModel):
    messages: List[LLMMessage]
    model: str
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    stop: Optional[List[str]] = None
    tools: Optional[List[Dict[str, object]]] = None


class LLMUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class AttachmentFailure(BaseModel):
    id: str
    error: str


class AttachmentResults(BaseModel):
    sent: List[str] = Field(default_factory=list)
    failed: List[AttachmentFailure] = Field(default_factory=list)


class LLMResponse(BaseModel):
    content: str
    finish_reason: str
    usage: LLMUsage = Field(default_factory=LLMUsage)
    raw: Dict[str, object] = Field(default_factory=dict)
    attachment_results: Optional[AttachmentResults] = None


class StreamChunk(BaseModel):
    content: str = ""
    done: bool = False
    usage: Optional[LLMUsage] = None
    attachment_results: Optional[AttachmentResults] = None


class LLMProviderError(Exception):
    def __init__(
        self,
        provider: str,
        message: str,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.message = message
        self.original_error = original_error


class APIKeyError(LLMProviderError):
    def __init__(self, provider: str, message: str = "Invalid or missing API key") -> None:
        super().__init__(provider, message)


class RateLimitError(LLMProviderError):
    def __init__(
        self,
        provider: str,
        retry_after: Optional[int] = None,
        message: str = "Rate limit exceeded",
    ) -> None:
        super().__init__(provider, message)
        self.retry_after = retry_after


class NetworkError(LLMProviderError):
    def __init__(self, provider: str, message: str = "Network error occurred") -> None:
        super().__init__(provider, message)


class ModelNotFoundError(LLMProviderError):
    def __init__(self, provider: str, model: str) -> None:
        super().__init__(provider, f'Model "{model}" not found or not available')
        self.model = model


class InvalidRequestError(LLMProviderError):
    pass


def _response_error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:300] or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        if data.get("message"):
            return str(data["message"])
    return response.text[:300]


def _retry_after(response: httpx.Response) -> Optional[int]:
    value = response.headers.get("retry-after")
    if value and value.isdigit():
        return int(value)
    return None


def handle_provider_error(
    provider: str,
    error: BaseException,
    model: Optional[str] = None,
) -> LLMProviderError:
    if isinstance(error, LLMProviderError):
        return error

    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        status = response.status_code
        detail = _response_error_message(response)
        lowered = detail.lower()
        if status in (401, 403):
            return APIKeyError(provider)
        if status == 429:
            return RateLimitError(provider, retry_after=_retry_after(response))
        if "model" in lowered and ("not found" in lowered or "does not exist" in lowered):
            return ModelNotFoundError(provider, model or "unknown")
        if status == 404 and model:
            return ModelNotFoundError(provider, model)
        if status in (400, 422):
            return InvalidRequestError(provider, detail)
        if status >= 500:
            return LLMProviderError(provider, f"Upstream error {status}: {detail}", error)
        return LLMProviderError(provider, detail, error)

    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return NetworkError(provider, str(error) or type(error).__name__)

    if isinstance(error, ValueError):
        return LLMProviderError(provider, f"Invalid response from provider: {error}", error)

    message = str(error).lower()
    if (
        "unauthorized" in message
        or "invalid api key" in message
        or "authentication" in message
        or "401" in message
    ):
        return APIKeyError(provider)
    if "rate limit" in message or "too many requests" in message or "429" in message:
        return RateLimitError(provider)
    if (
        "network" in message
        or "econnrefused" in message
        or "connection" in message
        or "timeout" in message
        or "enotfound" in message
    ):
        return NetworkError(provider, str(error))
    if "model" in message and ("not found" in message or "does not exist" in message):
        return ModelNotFoundError(provider, model or "unknown")
    if "invalid" in message or "400" in message:
        return InvalidRequestError(provider, str(error))
    if str(error):
        return LLMProviderError(provider, str(error), error)
    return LLMProviderError(provider, "An unknown error occurred", error)


def user_friendly_error(error: BaseException) -> str:
    if isinstance(error, APIKeyError):
        return (
            f"Invalid or expired API key for {error.provider}. "
            "Please check your API key in settings."
        )
    if isinstance(error, RateLimitError):
        if error.retry_after:
            retry = f" Please try again in {error.retry_after} seconds."
        else:
            retry = " Please try again later."
        return f"Rate limit exceeded for {error.provider}.{retry}"
    if isinstance(error, NetworkError):
        return (
            f"Unable to connect to {error.provider}. "
            "Please check your internet connection and provider settings."
        )
    if isinstance(error, ModelNotFoundError):
        return f"{error.message}. Please select a different model in your connection profile."
    if isinstance(error, InvalidRequestError):
        return f"Invalid request to {error.provider}: {error.message}"
    if isinstance(error, LLMProviderError):
        return f"{error.provider} error: {error.message}"
    if str(error):
        return str(error)
    return "An unexpected error occurred. Please try again."


def is_openrouter_endpoint(base_url: Optional[str]) -> bool:
    if not base_url or not isinstance(base_url, str):
        return False
    try:
        parsed = urlparse(base_url.strip())
        hostname = parsed.hostname
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https") or not hostname:
        return False
    return hostname == "openrouter.ai" or hostname.endswith(".openrouter.ai")


def _usage_from_openai(data: Dict[str, object]) -> LLMUsage:
    usage = data.get("usage") or {}
    return LLMUsage(
        prompt_tokens=usage.get("prompt_tokens") or 0,
        completion_tokens=usage.get("completion_tokens") or 0,
        total_tokens=usage.get("total_tokens") or 0,
    )


def _decode_json(raw) -> Dict[str, object]:
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


async def _iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    async for line in response.aiter_lines():
        line = line.strip()
        if not line.startswith("data:"):
            continue
        payload = line[len("data:"):].strip()
        if payload == "[DONE]":
            return
        if payload:
            yield payload


class LLMProvider(ABC):
    """Adapter between the normalized chat request and one vendor API."""

    name = "UNKNOWN"
    supports_file_attachments = False
    supported_mime_types: Sequence[str] = ()

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=LLM_REQUEST_TIMEOUT_SECONDS,
            transport=self._transport,
        )

    def _fail(self, error: BaseException, model: Optional[str] = None) -> LLMProviderError:
        converted = handle_provider_error(self.name, error, model=model)
        LLM_LOGGER.warning(
            "provider_error provider=%s model=%s type=%s message=%s",
            self.name,
            model or "-",
            type(converted).__name__,
            converted.message,
        )
        return converted

    @abstractmethod
    async def send_message(self, params: LLMParams, api_key: str) -> LLMResponse:
        ...

    async def stream_message(self, params: LLMParams, api_key: str) -> AsyncIterator[StreamChunk]:
        """Yield content deltas, then one ``done`` chunk carrying usage.

        Providers without native streaming emit the whole reply as one delta.
        """
        response = await self.send_message(params, api_key)
        if response.content:
            yield StreamChunk(content=response.content)
        yield StreamChunk(
            done=True,
            usage=response.usage,
            attachment_results=response.attachment_results,
        )

    @abstractmethod
    async def validate_api_key(self, api_key: str) -> bool:
        ...

    @abstractmethod
    async def get_available_models(self, api_key: str) -> List[str]:
        ...


def _reject_attachments(
    messages: Sequence[LLMMessage], reason: str
) -> AttachmentResults:
    failed = [
        AttachmentFailure(id=attachment.id, error=reason)
        for message in messages
        for attachment in message.attachments
    ]
    return AttachmentResults(sent=[], failed=failed)


def _check_attachment(
    attachment: FileAttachment, supported: Sequence[str], provider_label: str
) -> Optional[str]:
    if attachment.mime_type not in supported:
        return (
            f"Unsupported file type: {attachment.mime_type}. "
            f"{provider_label} supports: {', '.join(supported)}"
        )
    if not attachment.data:
        return "File data not loaded"
    return None


class OpenAICompatibleProvider(LLMProvider):
    name = "OPENAI_COMPATIBLE"

    def __init__(
        self,
        base_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(transport=transport)
        self.base_url = base_url.rstrip("/")

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key or 'not-needed'}",
            "Content-Type": "application/json",
        }

    def _format_messages(
        self, messages: Sequence[LLMMessage]
    ) -> Tuple[List[Dict[str, object]], Optional[AttachmentResults]]:
        formatted = [{"role": m.role, "content": m.content} for m in messages]
        if any(m.attachments for m in messages):
            return formatted, _reject_attachments(
                messages, f"{self.name} does not accept file attachments"
            )
        return formatted, None

    def _request_body(
        self, params: LLMParams, messages: List[Dict[str, object]]
    ) -> Dict[str, object]:
        body: Dict[str, object] = {
            "model": params.model,
            "messages": messages,
            "temperature": params.temperature if params.temperature is not None else DEFAULT_TEMPERATURE,
            "max_tokens": params.max_tokens or DEFAULT_MAX_TOKENS,
            "top_p": params.top_p if params.top_p is not None else DEFAULT_TOP_P,
        }
        if params.stop:
            body["stop"] = params.stop
        if params.tools:
            body["tools"] = params.tools
            body["tool_choice"] = "auto"
        return body

    async def send_message(self, params: LLMParams, api_key: str) -> LLMResponse:
        messages, attachment_results = self._format_messages(params.messages)
        body = self._request_body(params, messages)
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=body,
                    headers=self._headers(api_key),
                )
                response.raise_for_status()
            data = _decode_json(response.content)
        except (httpx.HTTPError, ValueError) as exc:
            raise self._fail(exc, params.model) from exc
        choices = data.get("choices") or []
        if not choices:
            raise LLMProviderError(self.name, "No choices in response")
        choice = choices[0]
        return LLMResponse(
            content=(choice.get("message") or {}).get("content") or "",
            finish_reason=choice.get("finish_reason") or "stop",
            usage=_usage_from_openai(data),
            raw=data,
            attachment_results=attachment_results,
        )

    async def stream_message(self, params: LLMParams, api_key: str) -> AsyncIterator[StreamChunk]:
        messages, attachment_results = self._format_messages(params.messages)
        body = self._request_body(params, messages)
        body["stream"] = True
        body["stream_options"] = {"include_usage": True}
        usage = LLMUsage()
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    json=body,
                    headers=self._headers(api_key),
                ) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        response.raise_for_status()
                    async for payload in _iter_sse_data(response):
                        chunk = _decode_json(payload)
                        if chunk.get("usage"):
                            usage = _usage_from_openai(chunk)
                        for choice in chunk.get("choices") or []:
                            content = (choice.get("delta") or {}).get("content")
                            if content:
                                yield StreamChunk(content=content)
        except (httpx.HTTPError, ValueError) as exc:
            raise self._fail(exc, params.model) from exc
        yield StreamChunk(done=True, usage=usage, attachment_results=attachment_results)

    async def validate_api_key(self, api_key: str) -> bool:
        try:
            async with self._client() as client:
                response = await client.get(
                    f"{self.base_url}/models", headers=self._headers(api_key)
                )
        except httpx.HTTPError as exc:
            LLM_LOGGER.warning("api_key_validation_failed provider=%s error=%s", self.name, exc)
            return False
        return response.is_success

    async def get_available_models(self, api_key: str) -> List[str]:
        try:
            async with self._client() as client:
                response = await client.get(
                    f"{self.base_url}/models", headers=self._headers(api_key)
                )
                response.raise_for_status()
            data = _decode_json(response.content)
        except (httpx.HTTPError, ValueError) as exc:
            LLM_LOGGER.warning("model_list_failed provider=%s error=%s", self.name, exc)
            return []
        return sorted(
            item["id"] for item in data.get("data") or [] if isinstance(item, dict) and item.get("id")
        )


class OpenAIProvider(OpenAICompatibleProvider):
    name = "OPENAI"
    label = "OpenAI"
    supports_file_attachments = True
    supported_mime_types = IMAGE_MIME_TYPES

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        super().__init__("https://api.openai.com/v1", transport=transport)

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _format_messages(
        self, messages: Sequence[LLMMessage]
    ) -> Tuple[List[Dict[str, object]], Optional[AttachmentResults]]:
        results = AttachmentResults()
        formatted: List[Dict[str, object]] = []
        for message in messages:
            if not message.attachments:
                formatted.append({"role": message.role, "content": message.content})
                continue
            parts: List[Dict[str, object]] = []
            if message.content:
                parts.append({"type": "text", "text": message.content})
            for attachment in message.attachments:
                problem = _check_attachment(attachment, self.supported_mime_types, self.label)
                if problem:
                    results.failed.append(AttachmentFailure(id=attachment.id, error=problem))
                    continue
                parts.append(
                    {
                        "type": "image_url",
                        "image_url": {
                            "url": f"data:{attachment.mime_type};base64,{attachment.data}",
                        },
                    }
                )
                results.sent.append(attachment.id)
            formatted.append({"role": message.role, "content": parts})
        if not results.sent and not results.failed:
            return formatted, None
        return formatted, results

    async def get_available_models(self, api_key: str) -> List[str]:
        models = await super().get_available_models(api_key)
        return [model for model in models if model.startswith(("gpt-", "o1", "o3", "o4", "chatgpt"))]


class OpenRouterProvider(OpenAICompatibleProvider):
    name = "OPENROUTER"
    BASE_URL = "https://openrouter.ai/api/v1"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        super().__init__(self.BASE_URL, transport=transport)

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": FRONTEND_ORIGIN,
            "X-Title": APP_TITLE,
        }

    def _format_messages(
        self, messages: Sequence[LLMMessage]
    ) -> Tuple[List[Dict[str, object]], Optional[AttachmentResults]]:
        formatted = [{"role": m.role, "content": m.content} for m in messages]
        return formatted, _reject_attachments(
            messages,
            "OpenRouter file attachment support depends on model (not yet implemented)",
        )


class GrokProvider(OpenAICompatibleProvider):
    name = "GROK"
    label = "Grok"
    supports_file_attachments = True
    supported_mime_types = ["image/jpeg", "image/png"]

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        super().__init__("https://api.x.ai/v1", transport=transport)

    _format_messages = OpenAIProvider._format_messages


class GabAIProvider(OpenAICompatibleProvider):
    name = "GAB_AI"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        super().__init__("https://gab.ai/v1", transport=transport)


class AnthropicProvider(LLMProvider):
    name = "ANTHROPIC"
    supports_file_attachments = True
    supported_mime_types = IMAGE_MIME_TYPES
    BASE_URL = "https://api.anthropic.com/v1"
    API_VERSION = "2023-06-01"

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {
            "x-api-key": api_key,
            "anthropic-version": self.API_VERSION,
            "Content-Type": "application/json",
        }

    def _request_body(self, params: LLMParams) -> Tuple[Dict[str, object], AttachmentResults]:
        results = AttachmentResults()
        system_parts = [m.content for m in params.messages if m.role == "system" and m.content]
        messages: List[Dict[str, object]] = []
        for message in params.messages:
            if message.role == "system":
                continue
            blocks: List[Dict[str, object]] = []
            for attachment in message.attachments:
                problem = _check_attachment(attachment, self.supported_mime_types, "Anthropic")
                if problem:
                    results.failed.append(AttachmentFailure(id=attachment.id, error=problem))
                    continue
                blocks.append(
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": attachment.mime_type,
                            "data": attachment.data,
                        },
                    }
                )
                results.sent.append(attachment.id)
            if blocks:
                blocks.append({"type": "text", "text": message.content})
                messages.append({"role": message.role, "content": blocks})
            else:
                messages.append({"role": message.role, "content": message.content})
        body: Dict[str, object] = {
            "model": params.model,
            "messages": messages,
            "max_tokens": params.max_tokens or DEFAULT_MAX_TOKENS,
            "temperature": params.temperature if params.temperature is not None else DEFAULT_TEMPERATURE,
        }
        if system_parts:
            body["system"] = "\n\n".join(system_parts)
        if params.top_p is not None:
            body["top_p"] = params.top_p
        if params.stop:
            body["stop_sequences"] = params.stop
        if params.tools:
            body["tools"] = params.tools
        return body, results

    async def send_message(self, params: LLMParams, api_key: str) -> LLMResponse:
        body, results = self._request_body(params)
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.BASE_URL}/messages", json=body, headers=self._headers(api_key)
                )
                response.raise_for_status()
            data = _decode_json(response.content)
        except (httpx.HTTPError, ValueError) as exc:
            raise self._fail(exc, params.model) from exc
        text = "".join(
            block.get("text", "")
            for block in data.get("content") or []
            if block.get("type") == "text"
        )
        usage = data.get("usage") or {}
        prompt_tokens = usage.get("input_tokens") or 0
        completion_tokens = usage.get("output_tokens") or 0
        return LLMResponse(
            content=text,
            finish_reason=data.get("stop_reason") or "end_turn",
            usage=LLMUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
            raw=data,
            attachment_results=results,
        )

    async def stream_message(self, params: LLMParams, api_key: str) -> AsyncIterator[StreamChunk]:
        body, results = self._request_body(params)
        body["stream"] = True
        prompt_tokens = 0
        completion_tokens = 0
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    f"{self.BASE_URL}/messages",
                    json=body,
                    headers=self._headers(api_key),
                ) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        response.raise_for_status()
                    async for payload in _iter_sse_data(response):
                        event = _decode_json(payload)
                        kind = event.get("type")
                        if kind == "message_start":
                            usage = (event.get("message") or {}).get("usage") or {}
                            prompt_tokens = usage.get("input_tokens") or 0
                        elif kind == "content_block_delta":
                            text = (event.get("delta") or {}).get("text")
                            if text:
                                yield StreamChunk(content=text)
                        elif kind == "message_delta":
                            completion_tokens = (event.get("usage") or {}).get("output_tokens") or 0
        except (httpx.HTTPError, ValueError) as exc:
            raise self._fail(exc, params.model) from exc
        yield StreamChunk(
            done=True,
            usage=LLMUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
            attachment_results=results,
        )

    async def validate_api_key(self, api_key: str) -> bool:
        try:
            async with self._client() as client:
                response = await client.get(
                    f"{self.BASE_URL}/models", headers=self._headers(api_key)
                )
        except httpx.HTTPError as exc:
            LLM_LOGGER.warning("api_key_validation_failed provider=%s error=%s", self.name, exc)
            return False
        return response.is_success

    async def get_available_models(self, api_key: str) -> List[str]:
        try:
            async with self._client() as client:
                response = await client.get(
                    f"{self.BASE_URL}/models", headers=self._headers(api_key)
                )
                response.raise_for_status()
            data = _decode_json(response.content)
        except (httpx.HTTPError, ValueError) as exc:
            LLM_LOGGER.warning("model_list_failed provider=%s error=%s", self.name, exc)
            return []
        return [
            item["id"] for item in data.get("data") or [] if isinstance(item, dict) and item.get("id")
        ]


class OllamaProvider(LLMProvider):
    name = "OLLAMA"
    supports_file_attachments = True
    supported_mime_types = ["image/jpeg", "image/png"]

    def __init__(
        self,
        base_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(transport=transport)
        self.base_url = base_url.rstrip("/")

    def _request_body(
        self, params: LLMParams, stream: bool
    ) -> Tuple[Dict[str, object], AttachmentResults]:
        results = AttachmentResults()
        messages: List[Dict[str, object]] = []
        for message in params.messages:
            formatted: Dict[str, object] = {"role": message.role, "content": message.content}
            images: List[str] = []
            for attachment in message.attachments:
                problem = _check_attachment(attachment, self.supported_mime_types, "Ollama")
                if problem:
                    results.failed.append(AttachmentFailure(id=attachment.id, error=problem))
                    continue
                images.append(attachment.data or "")
                results.sent.append(attachment.id)
            if images:
                formatted["images"] = images
            messages.append(formatted)
        options: Dict[str, object] = {
            "temperature": params.temperature if params.temperature is not None else DEFAULT_TEMPERATURE,
            "num_predict": params.max_tokens or DEFAULT_MAX_TOKENS,
            "top_p": params.top_p if params.top_p is not None else DEFAULT_TOP_P,
        }
        if params.stop:
            options["stop"] = params.stop
        body = {
            "model": params.model,
            "messages": messages,
            "stream": stream,
            "options": options,
        }
        return body, results

    @staticmethod
    def _usage(data: Dict[str, object]) -> LLMUsage:
        prompt_tokens = data.get("prompt_eval_count") or 0
        completion_tokens = data.get("eval_count") or 0
        return LLMUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )

    async def send_message(self, params: LLMParams, api_key: str) -> LLMResponse:
        body, results = self._request_body(params, stream=False)
        try:
            async with self._client() as client:
                response = await client.post(f"{self.base_url}/api/chat", json=body)
                response.raise_for_status()
            data = _decode_json(response.content)
        except (httpx.HTTPError, ValueError) as exc:
            raise self._fail(exc, params.model) from exc
        return LLMResponse(
            content=(data.get("message") or {}).get("content") or "",
            finish_reason=data.get("done_reason") or "stop",
            usage=self._usage(data),
            raw=data,
            attachment_results=results,
        )

    async def stream_message(self, params: LLMParams, api_key: str) -> AsyncIterator[StreamChunk]:
        body, results = self._request_body(params, stream=True)
        usage = LLMUsage()
        try:
            async with self._client() as client:
                async with client.stream("POST", f"{self.base_url}/api/chat", json=body) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        response.raise_for_status()
                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        data = _decode_json(line)
                        content = (data.get("message") or {}).get("content")
                        if content:
                            yield StreamChunk(content=content)
                        if data.get("done"):
                            usage = self._usage(data)
        except (httpx.HTTPError, ValueError) as exc:
            raise self._fail(exc, params.model) from exc
        yield StreamChunk(done=True, usage=usage, attachment_results=results)

    async def validate_api_key(self, api_key: str) -> bool:
        try:
            async with self._client() as client:
                response = await client.get(f"{self.base_url}/api/tags")
        except httpx.HTTPError as exc:
            LLM_LOGGER.warning("api_key_validation_failed provider=%s error=%s", self.name, exc)
            return False
        return response.is_success

    async def get_available_models(self, api_key: str) -> List[str]:
        try:
            async with self._client() as client:
                response = await client.get(f"{self.base_url}/api/tags")
                response.raise_for_status()
            data = _decode_json(response.content)
        except (httpx.HTTPError, ValueError) as exc:
            LLM_LOGGER.warning("model_list_failed provider=%s error=%s", self.name, exc)
            return []
        return [
            item["name"]
            for item in data.get("models") or []
            if isinstance(item, dict) and item.get("name")
        ]


GOOGLE_SAFETY_SETTINGS = [
    {"category": category, "threshold": "BLOCK_NONE"}
    for category in (
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
        "HARM_CATEGORY_HARASSMENT",
    )
]


class GoogleProvider(LLMProvider):
    name = "GOOGLE"
    supports_file_attachments = True
    supported_mime_types = IMAGE_MIME_TYPES
    BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {"x-goog-api-key": api_key, "Content-Type": "application/json"}

    def _request_body(self, params: LLMParams) -> Tuple[Dict[str, object], AttachmentResults]:
        results = AttachmentResults()
        contents: List[Dict[str, object]] = []
        for message in params.messages:
            parts: List[Dict[str, object]] = []
            if message.content:
                parts.append({"text": message.content})
            for attachment in message.attachments:
                problem = _check_attachment(attachment, self.supported_mime_types, "Google")
                if problem:
                    results.failed.append(AttachmentFailure(id=attachment.id, error=problem))
                    continue
                parts.append(
                    {"inlineData": {"mimeType": attachment.mime_type, "data": attachment.data}}
                )
                results.sent.append(attachment.id)
            contents.append(
                {"role": "model" if message.role == "assistant" else "user", "parts": parts}
            )
        generation_config: Dict[str, object] = {
            "temperature": params.temperature if params.temperature is not None else DEFAULT_TEMPERATURE,
            "maxOutputTokens": params.max_tokens or DEFAULT_MAX_TOKENS,
            "topP": params.top_p if params.top_p is not None else DEFAULT_TOP_P,
        }
        if params.stop:
            generation_config["stopSequences"] = params.stop
        body = {
            "contents": contents,
            "generationConfig": generation_config,
            "safetySettings": GOOGLE_SAFETY_SETTINGS,
        }
        return body, results

    @staticmethod
    def _text(data: Dict[str, object]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts)

    @staticmethod
    def _usage(data: Dict[str, object]) -> LLMUsage:
        usage = data.get("usageMetadata") or {}
        return LLMUsage(
            prompt_tokens=usage.get("promptTokenCount") or 0,
            completion_tokens=usage.get("candidatesTokenCount") or 0,
            total_tokens=usage.get("totalTokenCount") or 0,
        )

    async def send_message(self, params: LLMParams, api_key: str) -> LLMResponse:
        body, results = self._request_body(params)
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.BASE_URL}/models/{params.model}:generateContent",
                    json=body,
                    headers=self._headers(api_key),
                )
                response.raise_for_status()
            data = _decode_json(response.content)
        except (httpx.HTTPError, ValueError) as exc:
            raise self._fail(exc, params.model) from exc
        candidates = data.get("candidates") or [{}]
        return LLMResponse(
            content=self._text(data),
            finish_reason=candidates[0].get("finishReason") or "STOP",
            usage=self._usage(data),
            raw=data,
            attachment_results=results,
        )

    async def stream_message(self, params: LLMParams, api_key: str) -> AsyncIterator[StreamChunk]:
        body, results = self._request_body(params)
        usage = LLMUsage()
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    f"{self.BASE_URL}/models/{params.model}:streamGenerateContent",
                    params={"alt": "sse"},
                    json=body,
                    headers=self._headers(api_key),
                ) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        response.raise_for_status()
                    async for payload in _iter_sse_data(response):
                        data = _decode_json(payload)
                        text = self._text(data)
                        if text:
                            yield StreamChunk(content=text)
                        if data.get("usageMetadata"):
                            usage = self._usage(data)
        except (httpx.HTTPError, ValueError) as exc:
            raise self._fail(exc, params.model) from exc
        yield StreamChunk(done=True, usage=usage, attachment_results=results)

    async def validate_api_key(self, api_key: str) -> bool:
        try:
            async with self._client() as client:
                response = await client.get(
                    f"{self.BASE_URL}/models", headers=self._headers(api_key)
                )
        except httpx.HTTPError as exc:
            LLM_LOGGER.warning("api_key_validation_failed provider=%s error=%s", self.name, exc)
            return False
        return response.is_success

    async def get_available_models(self, api_key: str) -> List[str]:
        try:
            async with self._client() as client:
                response = await client.get(
                    f"{self.BASE_URL}/models", headers=self._headers(api_key)
                )
                response.raise_for_status()
            data = _decode_json(response.content)
        except (httpx.HTTPError, ValueError) as exc:
            LLM_LOGGER.warning("model_list_failed provider=%s error=%s", self.name, exc)
            return []
        models = []
        for item in data.get("models") or []:
            if not isinstance(item, dict):
                continue
            if "generateContent" not in item.get("supportedGenerationMethods", []):
                continue
            models.append(str(item.get("name", "")).removeprefix("models/"))
        return [model for model in models if model]
