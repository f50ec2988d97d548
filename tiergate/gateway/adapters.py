"""Provider Adapters: protocol-level handling for each upstream backend.

Each adapter translates a canonical message list into the backend's HTTP
protocol and decodes the reply into a ChatResult (``complete``) or a lazy
sequence of text chunks (``stream_complete``).

Backend-specific behaviors:
  - OpenAI / Grok / Groq: OpenAI chat completions, SSE ``data:`` frames
  - Grok: accepts the short aliases ``smart`` / ``normal`` / ``fast``
  - Claude: Anthropic Messages API, system prompt is a top-level field,
    named SSE events (``content_block_delta`` ... ``message_stop``)
  - Gemini: generateContent, ``systemInstruction``, assistant → ``model`` role,
    finishReason SAFETY / blocked prompts return empty content

Errors are raised, never returned, using the classified taxonomy in
``tiergate.core.exceptions``. Adapters keep no state between calls.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from tiergate.core.exceptions import (
    UpstreamAuthError,
    UpstreamError,
    UpstreamProtocolError,
    UpstreamRateLimited,
    UpstreamUnavailable,
)
from tiergate.core.metrics import UPSTREAM_LATENCY
from tiergate.gateway.normalizer import emulate_stream, iter_sse_data, iter_sse_events
from tiergate.gateway.types import (
    DEFAULT_BACKEND_CONFIGS,
    Backend,
    BackendConfig,
    ChatResult,
    Message,
    Role,
    split_system,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def classify_status(status_code: int, body: str, backend: Backend) -> UpstreamError:
    """Map an HTTP error status to the upstream error taxonomy."""
    snippet = body[:300]
    message = f"{backend.value} API error: {status_code} - {snippet}"

    if status_code == 401:
        return UpstreamAuthError(message, backend=backend.value, upstream_status=status_code)
    if status_code in (403, 429):
        return UpstreamRateLimited(message, backend=backend.value, upstream_status=status_code)
    if status_code == 408 or status_code >= 500:
        return UpstreamUnavailable(message, backend=backend.value, upstream_status=status_code)
    return UpstreamProtocolError(message, backend=backend.value, upstream_status=status_code)


def _error_status(error: dict) -> int:
    """Status code carried by an in-stream error object (``code`` may be a string)."""
    code = error.get("code")
    if isinstance(code, int):
        return code
    if isinstance(code, str) and code.isdigit():
        return int(code)
    if "rate" in str(code).lower() or "rate" in str(error.get("type", "")).lower():
        return 429
    return 500


def _loads(data: str | bytes, backend: Backend) -> Any:
    try:
        return json.loads(data)
    except ValueError as e:
        raise UpstreamProtocolError(f"Invalid JSON from {backend.value}: {e}", backend=backend.value) from e


def _loads_object(data: str | bytes, backend: Backend) -> dict:
    value = _loads(data, backend)
    if not isinstance(value, dict):
        raise UpstreamProtocolError(f"Unexpected {backend.value} frame: {str(data)[:100]}", backend=backend.value)
    return value


def _error_object(value: Any) -> dict:
    """Some backends send ``"error": "<text>"`` instead of an object."""
    if isinstance(value, dict):
        return value
    return {"message": str(value)} if value else {}


@dataclass
class PreparedRequest:
    """Everything needed to issue one upstream HTTP call."""

    url: str
    payload: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Base adapter
# ---------------------------------------------------------------------------


class BaseProviderAdapter(ABC):
    """Base class for all provider adapters."""

    backend: Backend

    def __init__(
        self,
        config: BackendConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config or DEFAULT_BACKEND_CONFIGS.get(self.backend) or BackendConfig(backend=self.backend)
        self._transport = transport

    # -- hooks ---------------------------------------------------------------

    def resolve_model(self, model_id: str) -> str:
        return model_id

    @abstractmethod
    def build_request(
        self,
        messages: list[Message],
        model_id: str,
        credential: str,
        stream: bool,
    ) -> PreparedRequest:
        """Translate canonical messages into the backend's request."""
        ...

    @abstractmethod
    def parse_completion(self, data: dict, model_id: str) -> ChatResult:
        """Decode a full (non-streaming) reply. May raise KeyError/IndexError/TypeError."""
        ...

    @abstractmethod
    def decode_stream(self, lines: AsyncIterator[str]) -> AsyncIterator[str]:
        """Decode the backend's native stream framing into text chunks."""
        ...

    def classify(self, response: httpx.Response) -> UpstreamError:
        return classify_status(response.status_code, response.text, self.backend)

    # -- transport -----------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.config.timeout_seconds, transport=self._transport)

    def _unavailable(self, exc: Exception) -> UpstreamUnavailable:
        if isinstance(exc, httpx.TimeoutException):
            message = f"{self.backend.value} timeout after {self.config.timeout_seconds}s"
        else:
            message = f"{self.backend.value} connection error: {exc}"
        return UpstreamUnavailable(message, backend=self.backend.value)

    # -- operations ----------------------------------------------------------

    async def complete(self, messages: list[Message], model_id: str, credential: str) -> ChatResult:
        """Send a request and return the full reply."""
        model = self.resolve_model(model_id)
        request = self.build_request(messages, model, credential, stream=False)
        start = time.monotonic()

        try:
            async with self._client() as client:
                resp = await client.post(request.url, json=request.payload, headers=request.headers, params=request.params)
        except httpx.TransportError as e:
            raise self._unavailable(e) from e

        elapsed = time.monotonic() - start
        UPSTREAM_LATENCY.labels(backend=self.backend.value, mode="complete").observe(elapsed)

        if resp.status_code >= 400:
            raise self.classify(resp)

        data = _loads(resp.content, self.backend)
        if not isinstance(data, dict):
            raise UpstreamProtocolError(f"Unexpected {self.backend.value} reply shape", backend=self.backend.value)

        try:
            result = self.parse_completion(data, model)
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise UpstreamProtocolError(
                f"Malformed {self.backend.value} reply: missing {e}", backend=self.backend.value
            ) from e

        result.backend = self.backend
        result.latency_ms = int(elapsed * 1000)
        return result

    async def stream_complete(self, messages: list[Message], model_id: str, credential: str) -> AsyncIterator[str]:
        """Yield text chunks as the backend generates them."""
        if not self.config.native_streaming:
            result = await self.complete(messages, model_id, credential)
            async for chunk in emulate_stream(result.content):
                yield chunk
            return

        model = self.resolve_model(model_id)
        request = self.build_request(messages, model, credential, stream=True)
        start = time.monotonic()
        first = True

        try:
            async with self._client() as client:
                async with client.stream(
                    "POST", request.url, json=request.payload, headers=request.headers, params=request.params
                ) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        raise self.classify(resp)

                    async for text in self.decode_stream(resp.aiter_lines()):
                        if first:
                            first = False
                            UPSTREAM_LATENCY.labels(backend=self.backend.value, mode="first_chunk").observe(
                                time.monotonic() - start
                            )
                        yield text
        except httpx.TransportError as e:
            raise self._unavailable(e) from e
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise UpstreamProtocolError(
                f"Malformed {self.backend.value} stream frame: {e}", backend=self.backend.value
            ) from e


# ---------------------------------------------------------------------------
# OpenAI-compatible adapters (OpenAI, Grok, Groq)
# ---------------------------------------------------------------------------


class OpenAICompatibleAdapter(BaseProviderAdapter):
    """Chat Completions protocol shared by several backends."""

    base_url: str

    def build_request(self, messages: list[Message], model_id: str, credential: str, stream: bool) -> PreparedRequest:
        system, turns = split_system(messages)
        wire_messages: list[dict[str, str]] = []
        if system:
            wire_messages.append({"role": Role.SYSTEM.value, "content": system})
        wire_messages.extend({"role": m.role.value, "content": m.content} for m in turns)

        payload: dict[str, Any] = {
            "model": model_id,
            "messages": wire_messages,
            "temperature": self.config.temperature,
            "max_tokens": self.config.stream_max_tokens if stream else self.config.max_tokens,
        }
        if stream:
            payload["stream"] = True

        return PreparedRequest(
            url=f"{self.base_url}/chat/completions",
            payload=payload,
            headers={
                "Authorization": f"Bearer {credential}",
                "Content-Type": "application/json",
            },
        )

    def parse_completion(self, data: dict, model_id: str) -> ChatResult:
        choice = data["choices"][0]
        usage = data.get("usage") or {}
        return ChatResult(
            content=choice["message"].get("content") or "",
            tokens_used=usage.get("total_tokens"),
            model=data.get("model", model_id),
            finish_reason=choice.get("finish_reason") or "",
        )

    async def decode_stream(self, lines: AsyncIterator[str]) -> AsyncIterator[str]:
        async for data in iter_sse_data(lines):
            chunk = _loads_object(data, self.backend)
            if "error" in chunk:
                error = _error_object(chunk["error"])
                raise classify_status(_error_status(error), json.dumps(error), self.backend)
            choices = chunk.get("choices") or []
            if not choices:
                continue
            text = (choices[0].get("delta") or {}).get("content")
            if text:
                yield text


class OpenAIAdapter(OpenAICompatibleAdapter):
    backend = Backend.OPENAI
    base_url = "https://api.openai.com/v1"


GROK_MODELS = {
    "smart": "grok-4-0709",
    "normal": "grok-3-mini",
    "fast": "grok-4-1-fast-reasoning",
}


class GrokAdapter(OpenAICompatibleAdapter):
    """xAI Grok. Model ids may be given as tier-style aliases."""

    backend = Backend.GROK
    base_url = "https://api.x.ai/v1"

    def resolve_model(self, model_id: str) -> str:
        if not model_id:
            return GROK_MODELS["normal"]
        return GROK_MODELS.get(model_id, model_id)


class GroqAdapter(OpenAICompatibleAdapter):
    backend = Backend.GROQ
    base_url = "https://api.groq.com/openai/v1"


# ---------------------------------------------------------------------------
# Claude Adapter (Anthropic Messages API)
# ---------------------------------------------------------------------------

_CLAUDE_ERROR_TYPES: dict[str, int] = {
    "authentication_error": 401,
    "permission_error": 403,
    "rate_limit_error": 429,
    "overloaded_error": 529,
    "api_error": 500,
    "invalid_request_error": 400,
    "not_found_error": 404,
}


class ClaudeAdapter(BaseProviderAdapter):
    """Anthropic Messages adapter. System text goes in the top-level ``system`` field."""

    backend = Backend.CLAUDE
    api_url = "https://api.anthropic.com/v1/messages"
    api_version = "2023-06-01"

    def build_request(self, messages: list[Message], model_id: str, credential: str, stream: bool) -> PreparedRequest:
        system, turns = split_system(messages)
        payload: dict[str, Any] = {
            "model": model_id,
            "max_tokens": self.config.stream_max_tokens if stream else self.config.max_tokens,
            "temperature": self.config.temperature,
            "messages": [{"role": m.role.value, "content": m.content} for m in turns],
        }
        if system:
            payload["system"] = system
        if stream:
            payload["stream"] = True

        return PreparedRequest(
            url=self.api_url,
            payload=payload,
            headers={
                "x-api-key": credential,
                "anthropic-version": self.api_version,
                "Content-Type": "application/json",
            },
        )

    def parse_completion(self, data: dict, model_id: str) -> ChatResult:
        blocks = data["content"]
        text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
        usage = data.get("usage") or {}
        tokens = None
        if usage:
            tokens = int(usage.get("input_tokens", 0)) + int(usage.get("output_tokens", 0))
        return ChatResult(
            content=text,
            tokens_used=tokens,
            model=data.get("model", model_id),
            finish_reason=data.get("stop_reason") or "",
        )

    async def decode_stream(self, lines: AsyncIterator[str]) -> AsyncIterator[str]:
        async for event, data in iter_sse_events(lines):
            payload = _loads_object(data, self.backend)
            kind = event or payload.get("type", "")

            if kind == "content_block_delta":
                delta = payload["delta"]
                if delta.get("type") == "text_delta" and delta.get("text"):
                    yield delta["text"]
            elif kind == "message_stop":
                return
            elif kind == "error":
                error = _error_object(payload.get("error"))
                status = _CLAUDE_ERROR_TYPES.get(error.get("type", ""), 500)
                raise classify_status(status, error.get("message", ""), self.backend)


# ---------------------------------------------------------------------------
# Gemini Adapter (Google AI)
# ---------------------------------------------------------------------------


class GeminiAdapter(BaseProviderAdapter):
    """Google Gemini adapter with SAFETY filter detection."""

    backend = Backend.GEMINI
    api_url_template = "https://generativelanguage.googleapis.com/v1beta/models/{model}:{method}"

    def build_request(self, messages: list[Message], model_id: str, credential: str, stream: bool) -> PreparedRequest:
        system, turns = split_system(messages)

        contents = [
            {
                "role": "model" if m.role == Role.ASSISTANT else "user",
                "parts": [{"text": m.content}],
            }
            for m in turns
        ]

        payload: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": self.config.temperature,
                "maxOutputTokens": self.config.stream_max_tokens if stream else self.config.max_tokens,
            },
        }

        # System instruction (separate from contents in Gemini API)
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}

        params = {"key": credential}
        if stream:
            params["alt"] = "sse"

        method = "streamGenerateContent" if stream else "generateContent"
        return PreparedRequest(
            url=self.api_url_template.format(model=model_id, method=method),
            payload=payload,
            headers={"Content-Type": "application/json"},
            params=params,
        )

    def classify(self, response: httpx.Response) -> UpstreamError:
        # Gemini reports a bad key as 400 INVALID_ARGUMENT
        if response.status_code == 400 and "API_KEY_INVALID" in response.text:
            return UpstreamAuthError(
                "gemini API key invalid", backend=self.backend.value, upstream_status=response.status_code
            )
        return super().classify(response)

    @staticmethod
    def _candidate_text(candidate: dict) -> str:
        parts = (candidate.get("content") or {}).get("parts") or []
        return "".join(p.get("text", "") for p in parts if "text" in p)

    def parse_completion(self, data: dict, model_id: str) -> ChatResult:
        usage = data.get("usageMetadata") or {}
        result = ChatResult(
            tokens_used=usage.get("totalTokenCount"),
            model=data.get("modelVersion", model_id),
        )

        candidates = data.get("candidates") or []
        if candidates:
            candidate = candidates[0]
            result.finish_reason = candidate.get("finishReason", "")
            if result.finish_reason == "SAFETY":
                logger.info("Gemini safety filter triggered for model %s", model_id)
                return result
            result.content = self._candidate_text(candidate)
            return result

        # No candidates: check prompt feedback
        block_reason = (data.get("promptFeedback") or {}).get("blockReason", "")
        if block_reason:
            logger.info("Gemini blocked prompt: %s", block_reason)
            result.finish_reason = f"BLOCKED_{block_reason}"
            return result

        raise KeyError("candidates")

    async def decode_stream(self, lines: AsyncIterator[str]) -> AsyncIterator[str]:
        async for data in iter_sse_data(lines):
            chunk = _loads_object(data, self.backend)
            if "error" in chunk:
                error = _error_object(chunk["error"])
                raise classify_status(_error_status(error), error.get("message", ""), self.backend)
            for candidate in chunk.get("candidates") or []:
                text = self._candidate_text(candidate)
                if text:
                    yield text


# ---------------------------------------------------------------------------
# Adapter registry
# ---------------------------------------------------------------------------

ADAPTER_REGISTRY: dict[Backend, type[BaseProviderAdapter]] = {
    Backend.OPENAI: OpenAIAdapter,
    Backend.CLAUDE: ClaudeAdapter,
    Backend.GEMINI: GeminiAdapter,
    Backend.GROK: GrokAdapter,
    Backend.GROQ: GroqAdapter,
}


def get_adapter(backend: Backend, config: BackendConfig | None = None, **kwargs) -> BaseProviderAdapter:
    """Factory: get the appropriate adapter for a backend."""
    cls = ADAPTER_REGISTRY.get(backend)
    if cls is None:
        raise ValueError(f"No adapter registered for backend: {backend}")
    return cls(config=config, **kwargs)


def build_adapters(
    configs: dict[Backend, BackendConfig] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[Backend, BaseProviderAdapter]:
    """One adapter per supported backend."""
    configs = configs or DEFAULT_BACKEND_CONFIGS
    return {backend: get_adapter(backend, configs.get(backend), transport=transport) for backend in Backend}
