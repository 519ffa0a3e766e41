"""Incremental decoding of ``data:``-prefixed event streams.

Bytes arrive in arbitrary chunks: a chunk may end in the middle of a line or
in the middle of a multi-byte UTF-8 character. :class:`FrameDecoder` keeps the
incomplete tail between calls and only emits frames for complete lines.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Protocol

from ..errors import ProtocolDecodeError

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
TERMINAL_SENTINEL = "[DONE]"

# Failure classes carried by relay error events.
ERROR_KIND_NETWORK = "network"
ERROR_KIND_UPSTREAM = "upstream"


@dataclass(frozen=True)
class Frame:
    """A decoded stream unit: a structured payload or the terminal marker."""

    payload: Any = None
    terminal: bool = False

    def _first_delta(self) -> Optional[dict[str, Any]]:
        if not isinstance(self.payload, dict):
            return None
        choices = self.payload.get("choices")
        if not isinstance(choices, list) or not choices:
            return None
        choice = choices[0]
        if not isinstance(choice, dict):
            return None
        delta = choice.get("delta")
        return delta if isinstance(delta, dict) else None

    @property
    def content(self) -> Optional[str]:
        """Return the text fragment of a content delta, if any."""

        delta = self._first_delta()
        if delta is None:
            return None
        content = delta.get("content")
        if isinstance(content, str) and content:
            return content
        return None

    @property
    def role(self) -> Optional[str]:
        delta = self._first_delta()
        if delta is None:
            return None
        role = delta.get("role")
        return role if isinstance(role, str) else None

    @property
    def error(self) -> Optional[str]:
        """Return an in-band error message carried by the frame."""

        if not isinstance(self.payload, dict):
            return None
        error = self.payload.get("error")
        if isinstance(error, str):
            return error
        if isinstance(error, dict):
            message = error.get("message")
            if isinstance(message, str):
                return message
        return None

    @property
    def error_kind(self) -> Optional[str]:
        if not isinstance(self.payload, dict):
            return None
        kind = self.payload.get("kind")
        return kind if isinstance(kind, str) else None

    @property
    def error_status(self) -> Optional[int]:
        if not isinstance(self.payload, dict):
            return None
        status = self.payload.get("status")
        if isinstance(status, int) and not isinstance(status, bool):
            return status
        return None


TERMINAL_FRAME = Frame(terminal=True)


class FrameDecoder:
    """Turn raw byte chunks into :class:`Frame` objects.

    One decoder instance belongs to exactly one stream.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._finished = False

    @property
    def finished(self) -> bool:
        """True once the terminal marker has been decoded."""

        return self._finished

    @property
    def pending(self) -> str:
        """Text received after the last complete line."""

        return self._buffer

    def feed(self, chunk: bytes) -> list[Frame]:
        """Decode every complete frame in ``buffer + chunk``."""

        if self._finished or not chunk:
            return []
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return self._decode_lines(lines)

    def flush(self) -> list[Frame]:
        """Decode whatever is left once the byte stream has ended."""

        if self._finished:
            return []
        remainder = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        if not remainder.strip():
            return []
        return self._decode_lines(remainder.split("\n"))

    def _decode_lines(self, lines: list[str]) -> list[Frame]:
        frames: list[Frame] = []
        for line in lines:
            try:
                frame = self._decode_line(line)
            except ProtocolDecodeError as exc:
                logger.debug("Skipping undecodable stream line: %s", exc)
                continue
            if frame is None:
                continue
            frames.append(frame)
            if frame.terminal:
                self._finished = True
                self._buffer = ""
                break
        return frames

    @staticmethod
    def _decode_line(line: str) -> Optional[Frame]:
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            # Blank keep-alives, comments and other SSE fields.
            return None
        data = line[len(DATA_PREFIX) :].strip()
        if data == TERMINAL_SENTINEL:
            return TERMINAL_FRAME
        if not data:
            return None
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as exc:
            raise ProtocolDecodeError(
                f"{exc.msg} at column {exc.colno}: {data[:80]!r}"
            ) from exc
        return Frame(payload=payload)


class ByteStream(Protocol):
    """Anything that yields raw body chunks and can be closed."""

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        ...

    async def aclose(self) -> None:
        ...


async def iter_frames(stream: ByteStream) -> AsyncIterator[Frame]:
    """Yield frames from ``stream`` up to and including the terminal marker."""

    decoder = FrameDecoder()
    async for chunk in stream.aiter_bytes():
        for frame in decoder.feed(chunk):
            yield frame
        if decoder.finished:
            return
    for frame in decoder.flush():
        yield frame


def encode_content_event(content: str) -> str:
    """Render a content delta in the chat-completions chunk shape."""

    return json.dumps(
        {"choices": [{"delta": {"content": content}}]}, ensure_ascii=False
    )


def encode_error_event(
    message: str,
    *,
    kind: str = ERROR_KIND_UPSTREAM,
    status: Optional[int] = None,
) -> str:
    """Render an in-band failure; ``status`` is the upstream HTTP status, if any."""

    payload: dict[str, Any] = {"error": message, "kind": kind}
    if status is not None:
        payload["status"] = status
    return json.dumps(payload, ensure_ascii=False)


__all__ = [
    "ByteStream",
    "DATA_PREFIX",
    "ERROR_KIND_NETWORK",
    "ERROR_KIND_UPSTREAM",
    "Frame",
    "FrameDecoder",
    "TERMINAL_FRAME",
    "TERMINAL_SENTINEL",
    "encode_content_event",
    "encode_error_event",
    "iter_frames",
]
