"""Decide how a user turn is handled.

Rules are data: an ordered table of regular expressions validated by
pydantic. The built-in table can be replaced with a JSON file named by
``TURN_RULES_PATH``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..config import get_settings
from ..errors import ConfigurationError
from ..utils.load_once import LoadOnce

logger = logging.getLogger(__name__)


class TurnPath(str, Enum):
    """Handling path selected for a user turn."""

    IMAGE_EDIT = "image_edit"
    IMAGE_GENERATION = "image_generation"
    CANNED = "canned"
    COMPLETION = "completion"


class ImageEditKind(str, Enum):
    REMOVE_BACKGROUND = "remove-bg"
    UPSCALE = "upscale"
    CARTOON = "cartoon"
    BLUR = "blur"
    GENERAL = "edit"


SUPPORTED_EDIT_KINDS = frozenset({ImageEditKind.REMOVE_BACKGROUND})


def _compile(pattern: str) -> str:
    try:
        re.compile(pattern, re.IGNORECASE)
    except re.error as exc:
        raise ValueError(f"invalid pattern {pattern!r}: {exc}") from exc
    return pattern


class EditRule(BaseModel):
    kind: ImageEditKind
    patterns: List[str] = Field(min_length=1)

    @field_validator("patterns")
    @classmethod
    def _check_patterns(cls, value: List[str]) -> List[str]:
        return [_compile(pattern) for pattern in value]


class GenerationRule(BaseModel):
    """A matched span is removed from the text to obtain the prompt."""

    pattern: str

    @field_validator("pattern")
    @classmethod
    def _check_pattern(cls, value: str) -> str:
        return _compile(value)


class CannedRule(BaseModel):
    name: str
    patterns: List[str] = Field(min_length=1)
    answer: str = Field(min_length=1)

    @field_validator("patterns")
    @classmethod
    def _check_patterns(cls, value: List[str]) -> List[str]:
        return [_compile(pattern) for pattern in value]


class RuleTable(BaseModel):
    edit: List[EditRule] = Field(default_factory=list)
    generation: List[GenerationRule] = Field(default_factory=list)
    canned: List[CannedRule] = Field(default_factory=list)


DEFAULT_RULES: dict[str, Any] = {
    "edit": [
        {
            "kind": "remove-bg",
            "patterns": [
                r"remove\s+(the\s+)?(background|bg)",
                r"\bremove[\s-]?bg\b",
                r"background\s+removal",
                r"hapus\s+(background|latar(\s+belakang)?|bg)",
                r"tanpa\s+(background|latar)",
            ],
        },
        {
            "kind": "upscale",
            "patterns": [r"\bupscale\b", r"\benhance\b", r"perjelas", r"tingkatkan\s+kualitas"],
        },
        {
            "kind": "cartoon",
            "patterns": [r"\bcartoon", r"\bkartun", r"\banime\b"],
        },
        {
            "kind": "blur",
            "patterns": [r"\bblur\b", r"buramkan", r"\bburam\b"],
        },
        {
            "kind": "edit",
            "patterns": [r"\bedit\b", r"\bmodify\b", r"\bchange\b", r"\bubah\b", r"\bganti\b"],
        },
    ],
    "generation": [
        {"pattern": r"^\s*/(gambar|image|imagine)\b\s*"},
        {
            "pattern": r"^\s*(please\s+)?(generate|create|draw|make)\s+(me\s+)?"
            r"(an?\s+)?(image|picture|drawing|photo)\s+(of\s+)?"
        },
        {"pattern": r"^\s*(tolong\s+)?buat(kan|lah)?\s+(sebuah\s+)?gambar\s*"},
    ],
    "canned": [
        {
            "name": "owner",
            "patterns": [
                r"tentang\s+owner",
                r"siapa\s+pembuat",
                r"who\s+made\s+this",
                r"who\s+(built|created|developed)\s+this",
                r"pembuat\s+ai",
                r"pembuat\s+aplikasi",
            ],
            "answer": (
                "This chat app was built by **GimnasIrwandi**, the creator and "
                "developer of this AI chat application."
            ),
        },
        {
            "name": "creator",
            "patterns": [
                r"siapa\s+(itu\s+)?gimnas",
                r"siapakah\s+gimnas",
                r"gimnas\s+itu\s+siapa",
                r"who\s+is\s+gimnas",
                r"what\s+is\s+gimnas",
            ],
            "answer": "Gimnas is the creator of this AI.",
        },
    ],
}


@dataclass(frozen=True)
class TurnClassification:
    path: TurnPath
    prompt: str = ""
    edit_kind: Optional[ImageEditKind] = None
    canned_answer: Optional[str] = None

    @property
    def edit_supported(self) -> bool:
        return self.edit_kind in SUPPORTED_EDIT_KINDS


class TurnClassifier:
    """Map a user turn to exactly one :class:`TurnPath`.

    Precedence: image edit (needs an attached asset), image generation (no
    asset), canned answer, plain completion.
    """

    def __init__(self, rules: RuleTable | None = None) -> None:
        rules = rules or RuleTable.model_validate(DEFAULT_RULES)
        self._edit = [
            (rule.kind, [re.compile(p, re.IGNORECASE) for p in rule.patterns])
            for rule in rules.edit
        ]
        self._generation = [
            re.compile(rule.pattern, re.IGNORECASE) for rule in rules.generation
        ]
        self._canned = [
            (rule, [re.compile(p, re.IGNORECASE) for p in rule.patterns])
            for rule in rules.canned
        ]

    def edit_kind(self, text: str) -> Optional[ImageEditKind]:
        for kind, patterns in self._edit:
            if any(pattern.search(text) for pattern in patterns):
                return kind
        return None

    def generation_prompt(self, text: str) -> Optional[str]:
        """Return the prompt when ``text`` asks for an image, else ``None``."""

        for pattern in self._generation:
            match = pattern.search(text)
            if match is None:
                continue
            prompt = (text[: match.start()] + text[match.end() :]).strip()
            if prompt:
                return prompt
        return None

    def canned_answer(self, text: str) -> Optional[str]:
        for rule, patterns in self._canned:
            if any(pattern.search(text) for pattern in patterns):
                return rule.answer
        return None

    def classify(self, text: str, has_asset: bool = False) -> TurnClassification:
        normalized = text.strip()

        if has_asset:
            kind = self.edit_kind(normalized)
            if kind is not None:
                return TurnClassification(
                    TurnPath.IMAGE_EDIT, prompt=normalized, edit_kind=kind
                )
        else:
            prompt = self.generation_prompt(normalized)
            if prompt is not None:
                return TurnClassification(TurnPath.IMAGE_GENERATION, prompt=prompt)

        answer = self.canned_answer(normalized)
        if answer is not None:
            return TurnClassification(
                TurnPath.CANNED, prompt=normalized, canned_answer=answer
            )
        return TurnClassification(TurnPath.COMPLETION, prompt=normalized)


def load_rule_table(path: Path | None = None) -> RuleTable:
    """Read a rule table from ``path``, or return the built-in one."""

    if path is None:
        return RuleTable.model_validate(DEFAULT_RULES)
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        table = RuleTable.model_validate(raw)
    except (OSError, json.JSONDecodeError, ValidationError) as exc:
        raise ConfigurationError(f"Could not load turn rules from {path}: {exc}") from exc
    logger.info(
        "Loaded turn rules from %s (%d edit, %d generation, %d canned)",
        path,
        len(table.edit),
        len(table.generation),
        len(table.canned),
    )
    return table


_classifier_cache: LoadOnce[TurnClassifier] = LoadOnce(
    lambda: TurnClassifier(load_rule_table(get_settings().turn_rules_path)),
    name="turn classifier",
)


def get_turn_classifier() -> TurnClassifier:
    """Return the shared classifier, loading the configured rules on first use."""

    return _classifier_cache.get()


__all__ = [
    "DEFAULT_RULES",
    "ImageEditKind",
    "RuleTable",
    "SUPPORTED_EDIT_KINDS",
    "TurnClassification",
    "TurnClassifier",
    "TurnPath",
    "get_turn_classifier",
    "load_rule_table",
]
