"""Process-wide cache for values that are expensive to load."""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LoadState(str, Enum):
    PENDING = "pending"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class LoadOnce(Generic[T]):
    """Run ``loader`` at most once successfully and share the result.

    Concurrent callers block on the lock while a load is in flight. A failed
    load is recorded and re-raised; the next ``get()`` tries again.
    """

    def __init__(self, loader: Callable[[], T], *, name: str = "value") -> None:
        self._loader = loader
        self._name = name
        self._lock = threading.Lock()
        self._state = LoadState.PENDING
        self._value: Optional[T] = None
        self._error: Optional[BaseException] = None

    @property
    def state(self) -> LoadState:
        return self._state

    @property
    def error(self) -> Optional[BaseException]:
        """The exception raised by the most recent failed load."""

        return self._error

    def get(self) -> T:
        if self._state is LoadState.READY:
            return self._value  # type: ignore[return-value]
        with self._lock:
            if self._state is LoadState.READY:
                return self._value  # type: ignore[return-value]
            self._state = LoadState.LOADING
            try:
                value = self._loader()
            except Exception as exc:
                self._state = LoadState.FAILED
                self._error = exc
                logger.warning("Loading %s failed: %s", self._name, exc)
                raise
            self._value = value
            self._error = None
            self._state = LoadState.READY
            logger.debug("Loaded %s", self._name)
            return value

    def reset(self) -> None:
        """Forget the cached value so the next ``get()`` loads again."""

        with self._lock:
            self._state = LoadState.PENDING
            self._value = None
            self._error = None


__all__ = ["LoadOnce", "LoadState"]
