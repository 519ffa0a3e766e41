"""Caller-side stream consumption over the relay or a direct provider call."""

from __future__ import annotations

import logging
from contextlib import aclosing
from typing import (
    Any,
    AsyncGenerator,
    Callable,
    Iterable,
    Mapping,
    Optional,
    Protocol,
    Sequence,
)

import httpx
from pydantic import ValidationError

from ..config import Settings, get_settings
from ..errors import (
    ClientInputError,
    ConfigurationError,
    NetworkError,
    RelayChatError,
    UpstreamError,
)
from ..providers import UpstreamCompletionClient, open_response_stream
from ..schemas.chat import Provider, RelayMessage, StreamChunk
from ..streaming.frames import (
    ERROR_KIND_UPSTREAM,
    ByteStream,
    Frame,
    iter_frames,
)

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[RelayChatError], None]
MessageLike = RelayMessage | Mapping[str, Any]


def _error_from_frame(frame: Frame, message: str) -> RelayChatError:
    """Rebuild the failure reported by an in-band error event.

    Provider error objects and relay events of kind ``upstream`` carry a
    provider status. Anything else means the stream broke in transit.
    """

    provider_shaped = isinstance(frame.payload.get("error"), dict)
    if provider_shaped or frame.error_kind == ERROR_KIND_UPSTREAM:
        return UpstreamError(frame.error_status or 502, message)
    return NetworkError(message)


async def iter_stream_chunks(
    stream: ByteStream,
) -> AsyncGenerator[StreamChunk, None]:
    """Yield content increments from ``stream`` followed by one ``done`` chunk.

    The stream is closed once iteration stops, including when the caller
    abandons the generator early.
    """

    try:
        async with aclosing(iter_frames(stream)) as frames:
            async for frame in frames:
                if frame.terminal:
                    break
                error = frame.error
                if error is not None:
                    raise _error_from_frame(frame, error)
                content = frame.content
                if content:
                    yield StreamChunk(content=content, done=False)
        yield StreamChunk(content="", done=True)
    finally:
        await stream.aclose()


class CompletionBackend(Protocol):
    """Strategy that opens a completion byte stream for a message list."""

    name: str

    async def open(
        self, messages: Sequence[RelayMessage], provider: Provider
    ) -> ByteStream:
        ...


class RelayBackend:
    """Stream through the credential-holding relay."""

    name = "relay"

    def __init__(
        self,
        relay_url: str,
        *,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._endpoint = f"{relay_url.rstrip('/')}/relay/chat"
        self._settings = settings
        self._http_client = http_client

    async def open(
        self, messages: Sequence[RelayMessage], provider: Provider
    ) -> ByteStream:
        client = self._http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self._settings.request_timeout, connect=10.0)
        )
        payload = {
            "messages": [message.model_dump() for message in messages],
            "provider": provider.value,
        }
        logger.debug("Opening relay stream at %s (%d messages)", self._endpoint, len(messages))
        try:
            stream = await open_response_stream(
                client,
                self._endpoint,
                headers={
                    "Content-Type": "application/json",
                    "Accept": "text/event-stream",
                },
                payload=payload,
                max_duration=self._settings.max_stream_seconds,
            )
        except RelayChatError:
            if self._http_client is None:
                await client.aclose()
            raise
        if self._http_client is None:
            return _OwnedClientStream(stream, client)
        return stream


class _OwnedClientStream:
    """Close a per-request HTTP client together with its stream."""

    def __init__(self, stream: ByteStream, client: httpx.AsyncClient) -> None:
        self._stream = stream
        self._client = client

    def aiter_bytes(self):
        return self._stream.aiter_bytes()

    async def aclose(self) -> None:
        try:
            await self._stream.aclose()
        finally:
            await self._client.aclose()


class DirectProviderBackend:
    """Call the provider directly with the user's own credential."""

    name = "direct"

    def __init__(
        self,
        credential: str,
        *,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._credential = credential
        self._client = UpstreamCompletionClient(settings, http_client=http_client)

    async def open(
        self, messages: Sequence[RelayMessage], provider: Provider
    ) -> ByteStream:
        return await self._client.open_stream(provider, self._credential, messages)


def resolve_backend(
    settings: Settings,
    credential: Optional[str] = None,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> CompletionBackend:
    """Use the relay when one is configured and no credential was given."""

    if credential:
        return DirectProviderBackend(
            credential, settings=settings, http_client=http_client
        )
    if settings.relay_url is not None:
        return RelayBackend(
            str(settings.relay_url), settings=settings, http_client=http_client
        )
    raise ConfigurationError(
        "No API key provided and no relay configured. "
        "Enter your API key or set RELAY_URL."
    )


def _to_relay_messages(messages: Iterable[MessageLike]) -> list[RelayMessage]:
    try:
        return [
            message
            if isinstance(message, RelayMessage)
            else RelayMessage.model_validate(dict(message))
            for message in messages
        ]
    except (TypeError, ValueError, ValidationError) as exc:
        raise ClientInputError("Invalid messages format", details=str(exc)) from exc


def _to_provider(provider: Provider | str) -> Provider:
    try:
        return Provider(provider)
    except ValueError as exc:
        raise ClientInputError(f"Unsupported provider: {provider}") from exc


async def stream_chat_completion(
    messages: Iterable[MessageLike],
    credential: Optional[str] = None,
    provider: Provider | str = Provider.GROQ,
    on_error: Optional[ErrorCallback] = None,
    *,
    settings: Settings | None = None,
    backend: CompletionBackend | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> AsyncGenerator[StreamChunk, None]:
    """Lazily stream a chat completion as :class:`StreamChunk` values.

    Nothing is sent until the first value is requested. Failures are passed
    to ``on_error`` and then re-raised.
    """

    settings = settings or get_settings()
    try:
        relay_messages = _to_relay_messages(messages)
        selected_provider = _to_provider(provider)
        selected = backend or resolve_backend(
            settings, credential, http_client=http_client
        )
        logger.info(
            "Streaming completion via %s backend (provider=%s)",
            selected.name,
            selected_provider.value,
        )
        stream = await selected.open(relay_messages, selected_provider)
        async with aclosing(iter_stream_chunks(stream)) as chunks:
            async for chunk in chunks:
                yield chunk
                if chunk.done:
                    return
    except RelayChatError as exc:
        logger.warning("Completion stream failed: %s", exc)
        if on_error is not None:
            on_error(exc)
        raise


__all__ = [
    "CompletionBackend",
    "DirectProviderBackend",
    "RelayBackend",
    "iter_stream_chunks",
    "resolve_backend",
    "stream_chat_completion",
]
