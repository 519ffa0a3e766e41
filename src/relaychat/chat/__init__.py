"""Caller-side conversation handling."""

from .classifier import TurnClassifier, TurnPath, get_turn_classifier
from .orchestrator import ConversationOrchestrator, TurnOutcome, TurnState
from .workspace import ChatWorkspace

__all__ = [
    "ChatWorkspace",
    "ConversationOrchestrator",
    "TurnClassifier",
    "TurnOutcome",
    "TurnPath",
    "TurnState",
    "get_turn_classifier",
]
