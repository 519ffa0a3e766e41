"""Relay API routes: streaming chat and image side channels."""

from __future__ import annotations

import json
from typing import Any, TypeVar

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, ValidationError
from sse_starlette.sse import EventSourceResponse

from ..errors import ClientInputError
from ..relay.service import RelayService
from ..schemas.chat import BackgroundRemovalRequest, ImageRequest, RelayRequest

router = APIRouter(prefix="/relay", tags=["relay"])

ModelT = TypeVar("ModelT", bound=BaseModel)


def get_relay_service(request: Request) -> RelayService:
    return request.app.state.relay_service


async def _read_json_body(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ClientInputError(
            "Invalid JSON in request body", details=str(exc)
        ) from exc


def _parse_body(model: type[ModelT], body: Any, messages: dict[str, str]) -> ModelT:
    """Validate ``body``; ``messages`` maps a field name to its error text."""

    if not isinstance(body, dict):
        raise ClientInputError("Request body must be a JSON object")
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = str(first["loc"][0]) if first.get("loc") else ""
        raise ClientInputError(
            messages.get(field, "Invalid request body"),
            details=first.get("msg"),
        ) from exc


@router.post("/chat", response_model=None, status_code=200)
async def relay_chat(
    request: Request,
    service: RelayService = Depends(get_relay_service),
) -> EventSourceResponse:
    """Relay a chat completion and stream it back as ``data:`` events."""

    body = await _read_json_body(request)
    payload = _parse_body(
        RelayRequest,
        body,
        {
            "messages": "Invalid messages format",
            "provider": "Unsupported provider",
        },
    )
    upstream = await service.open_chat_stream(payload)
    return EventSourceResponse(service.forward(upstream), sep="\n")


@router.post("/image", response_model=None, status_code=200)
async def relay_image(
    request: Request,
    service: RelayService = Depends(get_relay_service),
) -> Response:
    """Generate an image for a text prompt and return the raw bytes."""

    body = await _read_json_body(request)
    payload = _parse_body(ImageRequest, body, {"prompt": "Prompt is required"})
    result = await service.generate_image(payload.prompt)
    return Response(content=result.content, media_type=result.media_type)


@router.post("/image/remove-background", response_model=None, status_code=200)
async def relay_remove_background(
    request: Request,
    service: RelayService = Depends(get_relay_service),
) -> Response:
    """Remove the background of an uploaded image."""

    body = await _read_json_body(request)
    payload = _parse_body(
        BackgroundRemovalRequest, body, {"image": "Image is required"}
    )
    result = await service.remove_background(payload.image)
    return Response(content=result.content, media_type=result.media_type)


__all__ = ["get_relay_service", "router"]
