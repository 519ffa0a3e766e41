"""Error taxonomy shared by the relay and the caller-side client."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import status

UPSTREAM_KIND_AUTH = "auth"
UPSTREAM_KIND_RATE_LIMITED = "rate_limited"
UPSTREAM_KIND_SERVER = "server"
UPSTREAM_KIND_OTHER = "other"


class RelayChatError(Exception):
    """Base class for failures raised by relaychat components."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.message}


class ClientInputError(RelayChatError):
    """The caller sent a malformed request body."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, *, details: Optional[str] = None):
        super().__init__(message)
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        if self.details:
            payload["details"] = self.details
        return payload


class ConfigurationError(RelayChatError):
    """A required credential or setting is missing."""

    def __init__(self, message: str, *, hint: Optional[str] = None):
        super().__init__(message)
        self.hint = hint

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        if self.hint:
            payload["hint"] = self.hint
        return payload


def classify_upstream_status(status_code: int) -> str:
    if status_code in (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN):
        return UPSTREAM_KIND_AUTH
    if status_code == status.HTTP_429_TOO_MANY_REQUESTS:
        return UPSTREAM_KIND_RATE_LIMITED
    if status_code >= 500:
        return UPSTREAM_KIND_SERVER
    return UPSTREAM_KIND_OTHER


class UpstreamError(RelayChatError):
    """A provider answered with a non-2xx status or reported an error mid-stream."""

    def __init__(
        self,
        status_code: int,
        message: str,
        *,
        estimated_time: Optional[float] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.kind = classify_upstream_status(status_code)
        self.estimated_time = estimated_time

    @property
    def retryable(self) -> bool:
        """Rate limiting and server faults may succeed on a later attempt."""

        return self.kind in (UPSTREAM_KIND_RATE_LIMITED, UPSTREAM_KIND_SERVER)

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        if self.estimated_time is not None:
            payload["estimated_time"] = self.estimated_time
        return payload


class NetworkError(RelayChatError):
    """Transport failure while reaching the provider or the relay."""

    status_code = status.HTTP_502_BAD_GATEWAY


class ProtocolDecodeError(RelayChatError):
    """A single stream line could not be parsed. Recovered inside the decoder."""

    status_code = status.HTTP_502_BAD_GATEWAY


class UserFacingError(RelayChatError):
    """Final, human-readable message shown to the end user."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


_CONNECTIVITY_HINT = (
    "Failed to reach the server. Check your internet connection, "
    "or switch to using your own API key instead of the relay."
)


def to_user_facing(exc: BaseException) -> UserFacingError:
    """Translate any failure into the message the end user sees."""

    if isinstance(exc, UserFacingError):
        return exc
    if isinstance(exc, UpstreamError):
        if exc.estimated_time is not None:
            message = exc.message
        elif exc.kind == UPSTREAM_KIND_AUTH:
            message = (
                "The API key was rejected by the provider. "
                "Check that your key is valid and has not expired."
            )
        elif exc.kind == UPSTREAM_KIND_RATE_LIMITED:
            message = "Rate limit reached. Please wait a moment and try again later."
        elif exc.kind == UPSTREAM_KIND_SERVER:
            message = (
                "The provider is having trouble right now "
                f"({exc.status_code}). Please try again in a few moments."
            )
        else:
            message = exc.message
        return UserFacingError(message, cause=exc)
    if isinstance(exc, ConfigurationError):
        return UserFacingError(exc.message, cause=exc)
    if isinstance(exc, (NetworkError, ProtocolDecodeError)):
        return UserFacingError(_CONNECTIVITY_HINT, cause=exc)
    if isinstance(exc, RelayChatError):
        return UserFacingError(exc.message, cause=exc)
    return UserFacingError(str(exc) or "Failed to send message", cause=exc)


__all__ = [
    "ClientInputError",
    "ConfigurationError",
    "NetworkError",
    "ProtocolDecodeError",
    "RelayChatError",
    "UpstreamError",
    "UserFacingError",
    "classify_upstream_status",
    "to_user_facing",
]
