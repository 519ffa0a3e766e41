"""Pydantic models for relay requests and conversation state."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_CONVERSATION_TITLE = "New Chat"


class Provider(str, Enum):
    """Upstream completion providers the relay can talk to."""

    GROQ = "groq"
    OPENAI = "openai"


class RelayMessage(BaseModel):
    """A single message forwarded upstream."""

    role: Literal["system", "user", "assistant"]
    content: str

    model_config = ConfigDict(extra="ignore")


class RelayRequest(BaseModel):
    """Body accepted by the relay streaming endpoint."""

    messages: List[RelayMessage] = Field(min_length=1)
    provider: Provider = Provider.GROQ

    model_config = ConfigDict(extra="ignore")


class ImageRequest(BaseModel):
    """Body accepted by the image synthesis endpoint."""

    prompt: str = Field(min_length=1)

    model_config = ConfigDict(str_strip_whitespace=True)


class BackgroundRemovalRequest(BaseModel):
    """Body accepted by the background removal endpoint.

    ``image`` is either a ``data:`` URL or bare base64.
    """

    image: str = Field(min_length=1)

    model_config = ConfigDict(str_strip_whitespace=True)


@dataclass(frozen=True)
class StreamChunk:
    """Unit yielded by the stream consumer. ``done`` chunks carry no content."""

    content: str
    done: bool = False


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_id() -> str:
    return uuid.uuid4().hex


class Message(BaseModel):
    """One conversation message as persisted by the store."""

    id: str = Field(default_factory=_new_id)
    role: Literal["user", "assistant"]
    content: str = ""
    timestamp: int = Field(default_factory=_now_ms)
    uploaded_image_url: Optional[str] = None
    image_url: Optional[str] = None
    edited_image_url: Optional[str] = None
    is_image_generation: bool = False
    image_edit_type: Optional[str] = None
    is_error: bool = False

    model_config = ConfigDict(extra="ignore")

    def to_relay_message(self) -> RelayMessage:
        return RelayMessage(role=self.role, content=self.content)


class Conversation(BaseModel):
    """Ordered list of messages plus metadata."""

    id: str = Field(default_factory=_new_id)
    title: str = DEFAULT_CONVERSATION_TITLE
    messages: List[Message] = Field(default_factory=list)
    created_at: int = Field(default_factory=_now_ms)
    updated_at: int = Field(default_factory=_now_ms)

    model_config = ConfigDict(extra="ignore")

    def touch(self) -> None:
        self.updated_at = _now_ms()


__all__ = [
    "BackgroundRemovalRequest",
    "Conversation",
    "DEFAULT_CONVERSATION_TITLE",
    "ImageRequest",
    "Message",
    "Provider",
    "RelayMessage",
    "RelayRequest",
    "StreamChunk",
]
