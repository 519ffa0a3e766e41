"""Caller-side clients for the relay and the completion providers."""

from .consumer import (
    CompletionBackend,
    DirectProviderBackend,
    RelayBackend,
    iter_stream_chunks,
    resolve_backend,
    stream_chat_completion,
)
from .images import ImageClient

__all__ = [
    "CompletionBackend",
    "DirectProviderBackend",
    "ImageClient",
    "RelayBackend",
    "iter_stream_chunks",
    "resolve_backend",
    "stream_chat_completion",
]
