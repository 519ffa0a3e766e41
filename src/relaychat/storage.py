"""Conversation persistence collaborators."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from pydantic import ValidationError

from .schemas.chat import Conversation

logger = logging.getLogger(__name__)


class ConversationStore(Protocol):
    """Storage the orchestrator writes through after every mutation."""

    def save(self, conversation: Conversation) -> None:
        ...

    def delete(self, conversation_id: str) -> None:
        ...

    def delete_all(self) -> None:
        ...

    def list_all(self) -> List[Conversation]:
        ...

    def get_current_id(self) -> Optional[str]:
        ...

    def set_current_id(self, conversation_id: Optional[str]) -> None:
        ...


class InMemoryConversationStore:
    """Keep conversations in process memory only."""

    def __init__(self) -> None:
        self._conversations: Dict[str, Conversation] = {}
        self._current_id: Optional[str] = None

    def save(self, conversation: Conversation) -> None:
        self._conversations[conversation.id] = conversation.model_copy(deep=True)

    def delete(self, conversation_id: str) -> None:
        self._conversations.pop(conversation_id, None)

    def delete_all(self) -> None:
        self._conversations.clear()
        self._current_id = None

    def list_all(self) -> List[Conversation]:
        return [c.model_copy(deep=True) for c in self._conversations.values()]

    def get_current_id(self) -> Optional[str]:
        return self._current_id

    def set_current_id(self, conversation_id: Optional[str]) -> None:
        self._current_id = conversation_id


class JsonConversationStore:
    """Persist conversations and the current selection to one JSON file."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._conversations: Dict[str, Conversation] = {}
        self._current_id: Optional[str] = None
        self._load_from_disk()

    @property
    def path(self) -> Path:
        return self._path

    def _load_from_disk(self) -> None:
        """Load conversations from disk, skipping entries that fail validation."""
        if not self._path.exists():
            return

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to read conversations file %s: %s", self._path, exc)
            return

        if isinstance(raw, dict):
            items = raw.get("conversations", [])
            current_id = raw.get("current_id")
        elif isinstance(raw, list):
            items = raw
            current_id = None
        else:
            items = []
            current_id = None

        loaded: Dict[str, Conversation] = {}
        for item in items:
            try:
                conversation = Conversation.model_validate(item)
            except ValidationError as exc:
                logger.warning("Skipping invalid conversation entry: %s", exc)
                continue
            loaded[conversation.id] = conversation

        self._conversations = loaded
        self._current_id = current_id if current_id in loaded else None

    def _save_to_disk(self) -> None:
        payload = {
            "current_id": self._current_id,
            "conversations": [
                conversation.model_dump(mode="json")
                for conversation in self._conversations.values()
            ],
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        serialized = json.dumps(payload, indent=2, ensure_ascii=False)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(serialized + "\n", encoding="utf-8")
        tmp_path.replace(self._path)

    def save(self, conversation: Conversation) -> None:
        self._conversations[conversation.id] = conversation.model_copy(deep=True)
        self._save_to_disk()

    def delete(self, conversation_id: str) -> None:
        if self._conversations.pop(conversation_id, None) is None:
            return
        if self._current_id == conversation_id:
            self._current_id = None
        self._save_to_disk()

    def delete_all(self) -> None:
        self._conversations.clear()
        self._current_id = None
        self._save_to_disk()

    def list_all(self) -> List[Conversation]:
        conversations = [c.model_copy(deep=True) for c in self._conversations.values()]
        conversations.sort(key=lambda c: c.created_at)
        return conversations

    def get_current_id(self) -> Optional[str]:
        return self._current_id

    def set_current_id(self, conversation_id: Optional[str]) -> None:
        self._current_id = conversation_id
        self._save_to_disk()


__all__ = ["ConversationStore", "InMemoryConversationStore", "JsonConversationStore"]
