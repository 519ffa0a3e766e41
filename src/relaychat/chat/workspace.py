"""Manage the set of conversations and the current selection."""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from ..schemas.chat import Conversation
from ..storage import ConversationStore
from .orchestrator import ConversationOrchestrator

logger = logging.getLogger(__name__)

OrchestratorFactory = Callable[[Conversation, ConversationStore], ConversationOrchestrator]


class ChatWorkspace:
    """Create, select, rename and delete conversations backed by a store.

    Each conversation gets its own orchestrator, created on first use and kept
    for as long as the conversation exists.
    """

    def __init__(
        self,
        store: ConversationStore,
        orchestrator_factory: OrchestratorFactory | None = None,
    ) -> None:
        self._store = store
        self._factory = orchestrator_factory or (
            lambda conversation, store: ConversationOrchestrator(conversation, store)
        )
        self._conversations: Dict[str, Conversation] = {
            conversation.id: conversation for conversation in store.list_all()
        }
        self._orchestrators: Dict[str, ConversationOrchestrator] = {}
        self._current_id: Optional[str] = None
        self.restore()

    def restore(self) -> Optional[Conversation]:
        """Re-select the conversation that was current when the store was saved."""

        current_id = self._store.get_current_id()
        if current_id in self._conversations:
            self._current_id = current_id
        else:
            self._current_id = None
        return self.current

    @property
    def conversations(self) -> List[Conversation]:
        return [c.model_copy(deep=True) for c in self._conversations.values()]

    @property
    def current(self) -> Optional[Conversation]:
        if self._current_id is None:
            return None
        return self._conversations[self._current_id].model_copy(deep=True)

    @property
    def current_id(self) -> Optional[str]:
        return self._current_id

    def create(self) -> Conversation:
        conversation = Conversation()
        self._conversations[conversation.id] = conversation
        self._store.save(conversation)
        self._set_current(conversation.id)
        logger.info("Created conversation %s", conversation.id)
        return conversation.model_copy(deep=True)

    def select(self, conversation_id: str) -> Optional[Conversation]:
        """Make ``conversation_id`` current; unknown ids are ignored."""

        if conversation_id not in self._conversations:
            logger.debug("Cannot select unknown conversation %s", conversation_id)
            return None
        self._set_current(conversation_id)
        return self.current

    def rename(self, conversation_id: str, title: str) -> Optional[Conversation]:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return None
        conversation.title = title.strip() or conversation.title
        conversation.touch()
        self._store.save(conversation)
        return conversation.model_copy(deep=True)

    def delete(self, conversation_id: str) -> bool:
        if self._conversations.pop(conversation_id, None) is None:
            return False
        orchestrator = self._orchestrators.pop(conversation_id, None)
        if orchestrator is not None:
            orchestrator.detach()
        self._store.delete(conversation_id)
        if self._current_id == conversation_id:
            self._set_current(None)
        logger.info("Deleted conversation %s", conversation_id)
        return True

    def delete_all(self) -> None:
        for orchestrator in self._orchestrators.values():
            orchestrator.detach()
        self._orchestrators.clear()
        self._conversations.clear()
        self._current_id = None
        self._store.delete_all()

    def _set_current(self, conversation_id: Optional[str]) -> None:
        self._current_id = conversation_id
        self._store.set_current_id(conversation_id)

    def orchestrator(self, conversation_id: Optional[str] = None) -> ConversationOrchestrator:
        """Return the orchestrator for ``conversation_id`` (default: current).

        A new conversation is created when nothing is selected.
        """

        if conversation_id is None:
            if self._current_id is None:
                self.create()
            conversation_id = self._current_id
        assert conversation_id is not None
        if conversation_id not in self._conversations:
            raise KeyError(f"Unknown conversation: {conversation_id}")
        orchestrator = self._orchestrators.get(conversation_id)
        if orchestrator is None:
            orchestrator = self._factory(self._conversations[conversation_id], self._store)
            self._orchestrators[conversation_id] = orchestrator
        return orchestrator

    async def send_message(self, content: str, *, image: Optional[str] = None) -> bool:
        """Send a turn in the current conversation, creating one if needed."""

        return await self.orchestrator().send_message(content, image=image)


__all__ = ["ChatWorkspace", "OrchestratorFactory"]
