"""Per-conversation turn handling.

One :class:`ConversationOrchestrator` owns one conversation. It appends the
user's message, picks a handling path, drives the completion stream or an
image side channel, and republishes the conversation after each change.
At most one generation is in flight per conversation.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from enum import Enum
from typing import (
    AsyncIterator,
    Callable,
    Iterable,
    List,
    Optional,
    Protocol,
)

from ..client.consumer import ErrorCallback, stream_chat_completion
from ..client.images import ImageClient
from ..config import Settings, get_settings
from ..errors import RelayChatError, to_user_facing
from ..schemas.chat import (
    DEFAULT_CONVERSATION_TITLE,
    Conversation,
    Message,
    Provider,
    RelayMessage,
    StreamChunk,
)
from ..storage import ConversationStore
from .classifier import (
    ImageEditKind,
    TurnClassification,
    TurnClassifier,
    TurnPath,
    get_turn_classifier,
)

logger = logging.getLogger(__name__)

TITLE_LENGTH = 50
ASSET_ONLY_CONTENT = "Edit this image"

GENERATING_IMAGE_TEXT = "Generating image...\n\nThis can take a moment."
EDITING_IMAGE_TEXT = "Processing image...\n\nThis can take a moment."

Snapshot = Callable[[Conversation], None]


class CompletionStreamer(Protocol):
    def __call__(
        self,
        messages: Iterable[RelayMessage],
        credential: Optional[str] = None,
        provider: Provider | str = Provider.GROQ,
        on_error: Optional[ErrorCallback] = None,
    ) -> AsyncIterator[StreamChunk]:
        ...


class ImageOperations(Protocol):
    async def generate(self, prompt: str) -> str:
        ...

    async def remove_background(self, image: str) -> str:
        ...


class TurnState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"


class TurnOutcome(str, Enum):
    OK = "ok"
    ERROR = "error"
    CANCELLED = "cancelled"


class ConversationOrchestrator:
    """Drive user turns for a single conversation."""

    def __init__(
        self,
        conversation: Conversation,
        store: ConversationStore,
        *,
        settings: Settings | None = None,
        classifier: TurnClassifier | None = None,
        completion: CompletionStreamer | None = None,
        images: ImageOperations | None = None,
        credential: Optional[str] = None,
        provider: Provider | str = Provider.GROQ,
    ) -> None:
        self._settings = settings or get_settings()
        self._conversation = conversation
        self._store = store
        self._classifier = classifier or get_turn_classifier()
        self._completion = completion or self._default_completion
        self._images = images or ImageClient(self._settings)
        self._credential = credential
        self._provider = Provider(provider)

        self._state = TurnState.IDLE
        self._last_outcome: Optional[TurnOutcome] = None
        self._error: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._open_message: Optional[Message] = None
        self._placeholder_prefix: Optional[str] = None
        self._subscribers: List[Snapshot] = []
        self._detached = False

    def _default_completion(
        self,
        messages: Iterable[RelayMessage],
        credential: Optional[str] = None,
        provider: Provider | str = Provider.GROQ,
        on_error: Optional[ErrorCallback] = None,
    ) -> AsyncIterator[StreamChunk]:
        return stream_chat_completion(
            messages, credential, provider, on_error, settings=self._settings
        )

    @property
    def conversation(self) -> Conversation:
        return self._conversation.model_copy(deep=True)

    @property
    def conversation_id(self) -> str:
        return self._conversation.id

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def is_busy(self) -> bool:
        return self._state is not TurnState.IDLE

    @property
    def last_outcome(self) -> Optional[TurnOutcome]:
        return self._last_outcome

    @property
    def error(self) -> Optional[str]:
        """User-facing message of the most recent failed turn."""

        return self._error

    def subscribe(self, callback: Snapshot) -> Callable[[], None]:
        """Register ``callback`` for conversation snapshots; returns an unsubscriber."""

        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def configure(
        self,
        *,
        credential: Optional[str] = None,
        provider: Provider | str | None = None,
    ) -> None:
        self._credential = credential
        if provider is not None:
            self._provider = Provider(provider)

    def _publish(self) -> None:
        for callback in list(self._subscribers):
            snapshot = self._conversation.model_copy(deep=True)
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Conversation subscriber failed")

    def _persist(self) -> None:
        self._conversation.touch()
        if self._detached:
            return
        self._store.save(self._conversation)

    def _append(self, message: Message) -> Message:
        self._conversation.messages.append(message)
        self._persist()
        self._publish()
        return message

    def _is_first_exchange(self) -> bool:
        return (
            self._conversation.title == DEFAULT_CONVERSATION_TITLE
            and len(self._conversation.messages) == 1
        )

    async def send_message(
        self,
        content: str,
        *,
        image: Optional[str] = None,
    ) -> bool:
        """Run one turn. Returns ``False`` when the turn was not started.

        A turn is not started while another one is in flight, or when there is
        neither text nor an image to send. The turn runs in its own task, so
        :meth:`cancel` ends it without cancelling the caller.
        """

        if self.is_busy:
            logger.debug(
                "Ignoring send for conversation %s: turn already %s",
                self._conversation.id,
                self._state.value,
            )
            return False
        text = content.strip()
        if not text and not image:
            return False

        self._state = TurnState.SENDING
        self._error = None
        task = asyncio.create_task(self._run_turn(text, image))
        self._task = task
        try:
            await task
        except asyncio.CancelledError:
            self._last_outcome = TurnOutcome.CANCELLED
            caller = asyncio.current_task()
            if caller is not None and caller.cancelling():
                raise
        finally:
            self._open_message = None
            self._placeholder_prefix = None
            self._task = None
            self._state = TurnState.IDLE
        return True

    async def _run_turn(self, text: str, image: Optional[str]) -> None:
        try:
            user_message = self._append(
                Message(
                    role="user",
                    content=text or ASSET_ONLY_CONTENT,
                    uploaded_image_url=image,
                )
            )
            first_exchange = self._is_first_exchange()
            classification = self._classifier.classify(
                user_message.content, has_asset=image is not None
            )
            logger.info(
                "Conversation %s turn classified as %s",
                self._conversation.id,
                classification.path.value,
            )
            await self._dispatch(classification, image)
        except asyncio.CancelledError:
            self._settle_cancelled()
            raise
        except Exception as exc:
            self._settle_error(exc)
        else:
            if first_exchange:
                self._conversation.title = user_message.content.strip()[:TITLE_LENGTH]
                self._persist()
                self._publish()
            self._last_outcome = TurnOutcome.OK

    def cancel(self) -> bool:
        """Abandon the in-flight turn, keeping whatever content already arrived.

        Only the turn is cancelled; the caller awaiting :meth:`send_message`
        gets ``True`` back and carries on.
        """

        if self._task is None or self._task.done():
            return False
        logger.info("Cancelling in-flight turn for conversation %s", self._conversation.id)
        return self._task.cancel()

    def detach(self) -> bool:
        """Stop writing to the store and cancel any in-flight turn."""

        self._detached = True
        return self.cancel()

    async def _dispatch(
        self, classification: TurnClassification, image: Optional[str]
    ) -> None:
        if classification.path is TurnPath.IMAGE_EDIT:
            await self._run_image_edit(classification, image or "")
        elif classification.path is TurnPath.IMAGE_GENERATION:
            await self._run_image_generation(classification.prompt)
        elif classification.path is TurnPath.CANNED:
            self._append(
                Message(role="assistant", content=classification.canned_answer or "")
            )
        else:
            await self._run_completion()

    def _history(self) -> List[RelayMessage]:
        return [
            message.to_relay_message()
            for message in self._conversation.messages
            if not message.is_error
        ]

    async def _run_completion(self) -> None:
        history = self._history()
        assistant = self._append(Message(role="assistant", content=""))
        self._open_message = assistant
        self._state = TurnState.STREAMING

        def record_error(exc: RelayChatError) -> None:
            self._error = to_user_facing(exc).message

        chunks = self._completion(
            history, self._credential, self._provider, record_error
        )
        async with aclosing(chunks) as stream:
            async for chunk in stream:
                if chunk.done:
                    break
                assistant.content += chunk.content
                self._conversation.touch()
                self._publish()

        self._open_message = None
        self._persist()
        self._publish()

    def _open_placeholder(self, message: Message, failure_prefix: str) -> Message:
        placeholder = self._append(message)
        self._open_message = placeholder
        self._placeholder_prefix = failure_prefix
        return placeholder

    def _resolve_placeholder(self, placeholder: Message, **changes: object) -> None:
        for field, value in changes.items():
            setattr(placeholder, field, value)
        self._open_message = None
        self._placeholder_prefix = None
        self._persist()
        self._publish()

    async def _run_image_generation(self, prompt: str) -> None:
        placeholder = self._open_placeholder(
            Message(
                role="assistant",
                content=GENERATING_IMAGE_TEXT,
                is_image_generation=True,
            ),
            "Image generation failed",
        )
        image_url = await self._images.generate(prompt)
        self._resolve_placeholder(
            placeholder,
            content=f'Image generated.\n\nPrompt: "{prompt}"',
            image_url=image_url,
        )

    async def _run_image_edit(
        self, classification: TurnClassification, image: str
    ) -> None:
        kind = classification.edit_kind or ImageEditKind.GENERAL
        if not classification.edit_supported:
            self._append(
                Message(
                    role="assistant",
                    content=(
                        f'Image editing of kind "{kind.value}" is not supported yet. '
                        "Only background removal is available right now."
                    ),
                    image_edit_type=kind.value,
                )
            )
            return

        placeholder = self._open_placeholder(
            Message(
                role="assistant",
                content=EDITING_IMAGE_TEXT,
                image_edit_type=kind.value,
            ),
            "Background removal failed",
        )
        edited_url = await self._images.remove_background(image)
        self._resolve_placeholder(
            placeholder,
            content="Background removed.",
            edited_image_url=edited_url,
        )

    def _close_open_message(self, failure_text: str) -> None:
        message = self._open_message
        if message is None:
            return
        if self._placeholder_prefix is not None:
            message.content = f"{self._placeholder_prefix}\n\n{failure_text}"
            message.is_error = True
        elif not message.content:
            message.content = failure_text
            message.is_error = True
        self._open_message = None
        self._persist()
        self._publish()

    def _settle_error(self, exc: Exception) -> None:
        user_facing = to_user_facing(exc)
        if isinstance(exc, RelayChatError):
            logger.warning(
                "Turn failed for conversation %s: %s", self._conversation.id, exc
            )
        else:
            logger.exception("Turn failed for conversation %s", self._conversation.id)
        self._error = user_facing.message
        self._close_open_message(user_facing.message)
        self._last_outcome = TurnOutcome.ERROR

    def _settle_cancelled(self) -> None:
        self._close_open_message("Request cancelled.")
        self._last_outcome = TurnOutcome.CANCELLED


__all__ = [
    "ASSET_ONLY_CONTENT",
    "CompletionStreamer",
    "ConversationOrchestrator",
    "ImageOperations",
    "TurnOutcome",
    "TurnState",
]
