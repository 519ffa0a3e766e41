"""Relay business logic: credential resolution, stream forwarding, image calls."""

from __future__ import annotations

import base64
import binascii
import logging
import math
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncGenerator, Optional

import httpx
from fastapi import status

from ..config import Settings
from ..errors import ClientInputError, NetworkError, RelayChatError, UpstreamError
from ..providers import (
    PROVIDERS,
    UpstreamCompletionClient,
    UpstreamStream,
    get_provider_spec,
)
from ..schemas.chat import RelayRequest
from ..streaming.frames import (
    ERROR_KIND_NETWORK,
    TERMINAL_SENTINEL,
    encode_content_event,
    encode_error_event,
    iter_frames,
)

logger = logging.getLogger(__name__)

SseEvent = dict[str, str]


@dataclass(frozen=True)
class ImageResult:
    """Raw image bytes returned by an image provider."""

    content: bytes
    media_type: str


def decode_image_payload(image: str) -> tuple[bytes, str]:
    """Return the bytes and media type of a data URL or bare base64 string."""

    media_type = "application/octet-stream"
    data = image.strip()
    if data.startswith("data:"):
        header, _, data = data.partition(",")
        if not data or ";base64" not in header:
            raise ClientInputError("Image must be a base64 data URL")
        media_type = header[len("data:") :].split(";", 1)[0] or media_type
    try:
        return base64.b64decode(data, validate=True), media_type
    except (binascii.Error, ValueError) as exc:
        raise ClientInputError("Image is not valid base64", details=str(exc)) from exc


class RelayService:
    """Hold the provider credentials and relay calls on behalf of callers."""

    def __init__(
        self,
        settings: Settings,
        upstream: UpstreamCompletionClient | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._upstream = upstream or UpstreamCompletionClient(
            settings, http_client=http_client
        )
        self._http_client = http_client

    def configured_providers(self) -> dict[str, bool]:
        return {
            provider.value: bool(spec.credential(self._settings))
            for provider, spec in PROVIDERS.items()
        }

    async def open_chat_stream(self, request: RelayRequest) -> UpstreamStream:
        """Resolve the credential for ``request.provider`` and open the upstream stream."""

        spec = get_provider_spec(request.provider)
        credential = spec.credential(self._settings)
        if credential is None or not credential.get_secret_value():
            logger.error(
                "No credential configured for provider %s (expected %s)",
                spec.provider.value,
                spec.credential_env,
            )
            raise spec.missing_credential_error()

        logger.info(
            "Relaying chat request: provider=%s messages=%d",
            spec.provider.value,
            len(request.messages),
        )
        return await self._upstream.open_stream(
            spec.provider, credential, request.messages
        )

    async def forward(self, upstream: UpstreamStream) -> AsyncGenerator[SseEvent, None]:
        """Re-emit content deltas from ``upstream`` and always finish with ``[DONE]``.

        The upstream response is closed when forwarding ends for any reason,
        including the caller going away mid-stream.
        """

        forwarded = 0
        failure: Optional[str] = None
        try:
            async with aclosing(iter_frames(upstream)) as frames:
                async for frame in frames:
                    if frame.terminal:
                        break
                    content = frame.content
                    if content is None:
                        continue
                    forwarded += 1
                    yield {"data": encode_content_event(content)}
        except NetworkError as exc:
            logger.warning("Upstream connection lost after %d frame(s): %s", forwarded, exc)
            failure = encode_error_event(exc.message, kind=ERROR_KIND_NETWORK)
        except RelayChatError as exc:
            logger.warning("Upstream stream failed after %d frame(s): %s", forwarded, exc)
            failure = encode_error_event(exc.message, status=exc.status_code)
        except Exception as exc:
            logger.exception("Relay forwarding loop failed after %d frame(s)", forwarded)
            failure = encode_error_event(
                f"Relay stream failed: {exc}",
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        finally:
            await upstream.aclose()

        if failure is not None:
            yield {"data": failure}
        logger.info("Relay stream finished: %d content frame(s) forwarded", forwarded)
        yield {"data": TERMINAL_SENTINEL}

    def _image_headers(self, content_type: str) -> dict[str, str]:
        headers = {"Content-Type": content_type}
        if self._settings.huggingface_api_key is not None:
            token = self._settings.huggingface_api_key.get_secret_value()
            if token:
                headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _post_image_provider(
        self, url: str, *, headers: dict[str, str], **kwargs
    ) -> httpx.Response:
        try:
            if self._http_client is not None:
                return await self._http_client.post(url, headers=headers, **kwargs)
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.request_timeout, connect=10.0)
            ) as client:
                return await client.post(url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise NetworkError(f"Failed to reach image provider: {exc}") from exc

    @staticmethod
    def _image_result(response: httpx.Response, label: str) -> ImageResult:
        logger.info("%s provider responded %d", label, response.status_code)
        if response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE:
            try:
                body = response.json()
            except ValueError:
                body = {}
            estimated = body.get("estimated_time") if isinstance(body, dict) else None
            estimated_time = (
                float(estimated) if isinstance(estimated, (int, float)) else 0.0
            )
            raise UpstreamError(
                status.HTTP_503_SERVICE_UNAVAILABLE,
                "The model is loading. Please wait "
                f"{math.ceil(estimated_time)} seconds and try again.",
                estimated_time=estimated_time,
            )
        if response.status_code >= 400:
            raise UpstreamError(
                response.status_code,
                f"{label} provider error: {response.status_code} "
                f"{response.reason_phrase}. {response.text}".strip(),
            )
        media_type = response.headers.get("content-type") or "image/png"
        logger.debug("%s returned %d byte(s) of %s", label, len(response.content), media_type)
        return ImageResult(content=response.content, media_type=media_type)

    async def generate_image(self, prompt: str) -> ImageResult:
        """Synthesize an image for ``prompt``."""

        logger.info("Image generation request, prompt: %.50s", prompt)
        response = await self._post_image_provider(
            str(self._settings.image_model_url),
            headers=self._image_headers("application/json"),
            json={"inputs": prompt},
        )
        return self._image_result(response, "Image")

    async def remove_background(self, image: str) -> ImageResult:
        """Cut the subject of ``image`` out of its background."""

        content, media_type = decode_image_payload(image)
        logger.info("Background removal request: %d byte(s) of %s", len(content), media_type)
        response = await self._post_image_provider(
            str(self._settings.background_removal_model_url),
            headers=self._image_headers(media_type),
            content=content,
        )
        return self._image_result(response, "Background removal")


__all__ = ["ImageResult", "RelayService", "decode_image_payload"]
