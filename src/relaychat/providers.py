"""Upstream chat-completion client for the supported providers."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterable, Mapping, Optional

import httpx
from pydantic import SecretStr

from .config import Settings
from .errors import ConfigurationError, NetworkError, UpstreamError
from .schemas.chat import Provider, RelayMessage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderSpec:
    """Static description of an OpenAI-compatible completion provider.

    Each attribute names the :class:`Settings` field holding the value, so a
    new provider only needs settings fields and a registry entry.
    """

    provider: Provider
    credential_env: str
    credential_setting: str
    base_url_setting: str
    model_setting: str

    def credential(self, settings: Settings) -> SecretStr | None:
        return getattr(settings, self.credential_setting)

    def base_url(self, settings: Settings) -> str:
        return str(getattr(settings, self.base_url_setting)).rstrip("/")

    def model(self, settings: Settings) -> str:
        return getattr(settings, self.model_setting)

    def missing_credential_error(self) -> ConfigurationError:
        return ConfigurationError(
            f"API key not configured for provider: {self.provider.value}. "
            f"Please set {self.credential_env} using: "
            f"export {self.credential_env}=<your key> (or add it to .env)",
            hint="After setting the credential, restart the relay service.",
        )


PROVIDERS: dict[Provider, ProviderSpec] = {
    Provider.GROQ: ProviderSpec(
        provider=Provider.GROQ,
        credential_env="GROQ_API_KEY",
        credential_setting="groq_api_key",
        base_url_setting="groq_base_url",
        model_setting="groq_model",
    ),
    Provider.OPENAI: ProviderSpec(
        provider=Provider.OPENAI,
        credential_env="OPENAI_API_KEY",
        credential_setting="openai_api_key",
        base_url_setting="openai_base_url",
        model_setting="openai_model",
    ),
}


def get_provider_spec(provider: Provider | str) -> ProviderSpec:
    try:
        return PROVIDERS[Provider(provider)]
    except (KeyError, ValueError) as exc:
        raise ConfigurationError(f"Unknown provider: {provider}") from exc


def limit_context(
    messages: Iterable[RelayMessage | Mapping[str, Any]], limit: int
) -> list[dict[str, str]]:
    """Keep the most recent ``limit`` messages, oldest dropped first."""

    normalized: list[dict[str, str]] = []
    for message in messages:
        if isinstance(message, RelayMessage):
            normalized.append({"role": message.role, "content": message.content})
        else:
            normalized.append(
                {"role": str(message["role"]), "content": str(message["content"])}
            )
    if limit <= 0:
        return []
    return normalized[-limit:]


def extract_error_detail(raw: bytes, status_code: int, reason: str) -> str:
    """Return the provider's error message, else a generic status message."""

    fallback = f"API Error: {status_code} {reason}".rstrip()
    if not raw:
        return fallback
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        text = raw.decode("utf-8", errors="ignore")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return fallback
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str) and error:
            return error
    return fallback


class UpstreamStream:
    """Live streamed response body, exposed as raw byte chunks."""

    def __init__(
        self,
        response: httpx.Response,
        *,
        max_duration: Optional[float] = None,
    ) -> None:
        self._response = response
        self._max_duration = max_duration
        self._closed = False

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def headers(self) -> httpx.Headers:
        return self._response.headers

    @property
    def closed(self) -> bool:
        return self._closed

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        """Yield body chunks in arrival order.

        Transport failures surface as :class:`NetworkError`.
        """

        deadline = (
            time.monotonic() + self._max_duration
            if self._max_duration is not None
            else None
        )
        iterator = self._response.aiter_bytes().__aiter__()
        while True:
            try:
                if deadline is None:
                    chunk = await iterator.__anext__()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise asyncio.TimeoutError
                    chunk = await asyncio.wait_for(iterator.__anext__(), remaining)
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError as exc:
                raise NetworkError(
                    f"Stream exceeded the maximum duration of {self._max_duration:g}s"
                ) from exc
            except httpx.HTTPError as exc:
                raise NetworkError(f"Stream interrupted: {exc}") from exc
            if chunk:
                yield chunk

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()


async def open_response_stream(
    client: httpx.AsyncClient,
    url: str,
    *,
    headers: Mapping[str, str],
    payload: Mapping[str, Any],
    max_duration: Optional[float] = None,
) -> UpstreamStream:
    """POST ``payload`` and return the streamed body once a 2xx arrives."""

    request = client.build_request("POST", url, headers=dict(headers), json=payload)
    try:
        response = await client.send(request, stream=True)
    except httpx.HTTPError as exc:
        raise NetworkError(f"Failed to reach {request.url.host}: {exc}") from exc

    if response.status_code >= 400:
        try:
            body = await response.aread()
        except httpx.HTTPError:
            body = b""
        finally:
            await response.aclose()
        detail = extract_error_detail(
            body, response.status_code, response.reason_phrase
        )
        raise UpstreamError(response.status_code, detail)

    return UpstreamStream(response, max_duration=max_duration)


class UpstreamCompletionClient:
    """Client responsible for streaming chat completions from a provider."""

    _client_lock: asyncio.Lock = asyncio.Lock()
    _client_pool: dict[float, httpx.AsyncClient] = {}

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._settings = settings
        self._http_client = http_client

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client

        key = float(self._settings.request_timeout)
        client = self.__class__._client_pool.get(key)
        if client is not None:
            return client

        async with self.__class__._client_lock:
            client = self.__class__._client_pool.get(key)
            if client is None:
                timeout = httpx.Timeout(self._settings.request_timeout, connect=10.0)
                limits = httpx.Limits(
                    max_connections=50,
                    max_keepalive_connections=20,
                )
                client = httpx.AsyncClient(timeout=timeout, limits=limits)
                self.__class__._client_pool[key] = client
        return client

    @staticmethod
    def _headers(credential: SecretStr | str) -> dict[str, str]:
        secret = (
            credential.get_secret_value()
            if isinstance(credential, SecretStr)
            else credential
        )
        return {
            "Authorization": f"Bearer {secret}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    def build_payload(
        self,
        provider: Provider | str,
        messages: Iterable[RelayMessage | Mapping[str, Any]],
    ) -> dict[str, Any]:
        """Serialize a streaming request, enforcing the fixed parameters."""

        spec = get_provider_spec(provider)
        conversation = limit_context(messages, self._settings.context_message_limit)
        return {
            "model": spec.model(self._settings),
            "messages": [
                {"role": "system", "content": self._settings.system_prompt},
                *conversation,
            ],
            "stream": True,
            "temperature": self._settings.completion_temperature,
            "max_tokens": self._settings.completion_max_tokens,
        }

    async def open_stream(
        self,
        provider: Provider | str,
        credential: SecretStr | str | None,
        messages: Iterable[RelayMessage | Mapping[str, Any]],
    ) -> UpstreamStream:
        """Start a streaming completion and return its live body."""

        spec = get_provider_spec(provider)
        if not credential:
            raise spec.missing_credential_error()

        payload = self.build_payload(spec.provider, messages)
        url = f"{spec.base_url(self._settings)}/chat/completions"
        logger.info(
            "Opening %s completion stream (model=%s, messages=%d)",
            spec.provider.value,
            payload["model"],
            len(payload["messages"]),
        )
        client = await self._get_http_client()
        try:
            stream = await open_response_stream(
                client,
                url,
                headers=self._headers(credential),
                payload=payload,
                max_duration=self._settings.max_stream_seconds,
            )
        except UpstreamError as exc:
            logger.warning(
                "%s responded %d: %s", spec.provider.value, exc.status_code, exc.message
            )
            raise
        logger.debug("%s stream opened with status %d", spec.provider.value, stream.status_code)
        return stream

    @classmethod
    async def aclose_shared(cls) -> None:
        async with cls._client_lock:
            clients = list(cls._client_pool.values())
            cls._client_pool.clear()
        for client in clients:
            try:
                await client.aclose()
            except Exception as exc:  # pragma: no cover - best effort cleanup
                logger.debug("Error closing pooled HTTP client: %s", exc)


__all__ = [
    "PROVIDERS",
    "ProviderSpec",
    "UpstreamCompletionClient",
    "UpstreamStream",
    "extract_error_detail",
    "get_provider_spec",
    "limit_context",
    "open_response_stream",
]

