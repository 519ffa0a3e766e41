"""Caller-side image operations routed through the relay."""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Mapping, Optional

import httpx

from ..config import Settings, get_settings
from ..errors import ConfigurationError, NetworkError, UpstreamError
from ..providers import extract_error_detail

logger = logging.getLogger(__name__)


def to_data_url(content: bytes, media_type: str) -> str:
    encoded = base64.b64encode(content).decode("ascii")
    return f"data:{media_type};base64,{encoded}"


def _error_from_response(response: httpx.Response) -> UpstreamError:
    estimated_time: Optional[float] = None
    try:
        body = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        body = None
    if isinstance(body, dict) and isinstance(
        body.get("estimated_time"), (int, float)
    ):
        estimated_time = float(body["estimated_time"])
    detail = extract_error_detail(
        response.content, response.status_code, response.reason_phrase
    )
    return UpstreamError(response.status_code, detail, estimated_time=estimated_time)


class ImageClient:
    """Generate images and remove backgrounds via the relay side channels."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._http_client = http_client

    def _endpoint(self, path: str) -> str:
        if self._settings.relay_url is None:
            raise ConfigurationError(
                "Image features need a relay. Set RELAY_URL to the relay address."
            )
        return f"{str(self._settings.relay_url).rstrip('/')}{path}"

    async def _post(self, path: str, payload: Mapping[str, Any]) -> str:
        url = self._endpoint(path)
        try:
            if self._http_client is not None:
                response = await self._http_client.post(url, json=dict(payload))
            else:
                async with httpx.AsyncClient(
                    timeout=httpx.Timeout(self._settings.request_timeout, connect=10.0)
                ) as client:
                    response = await client.post(url, json=dict(payload))
        except httpx.HTTPError as exc:
            raise NetworkError(f"Failed to reach the relay: {exc}") from exc

        if response.status_code >= 400:
            error = _error_from_response(response)
            logger.warning("Relay %s failed with %d: %s", path, error.status_code, error.message)
            raise error
        media_type = response.headers.get("content-type", "image/png").split(";")[0]
        return to_data_url(response.content, media_type)

    async def generate(self, prompt: str) -> str:
        """Return a ``data:`` URL of an image synthesized from ``prompt``."""

        return await self._post("/relay/image", {"prompt": prompt})

    async def remove_background(self, image: str) -> str:
        """Return a ``data:`` URL of ``image`` with its background removed."""

        return await self._post("/relay/image/remove-background", {"image": image})


__all__ = ["ImageClient", "to_data_url"]
