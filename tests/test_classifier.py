"""Tests for turn classification."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from relaychat.chat.classifier import (
    ImageEditKind,
    RuleTable,
    TurnClassifier,
    TurnPath,
    load_rule_table,
)
from relaychat.errors import ConfigurationError


@pytest.fixture
def classifier() -> TurnClassifier:
    return TurnClassifier()


def test_plain_text_is_completion(classifier: TurnClassifier) -> None:
    result = classifier.classify("Explain recursion")

    assert result.path is TurnPath.COMPLETION
    assert result.prompt == "Explain recursion"


def test_edit_wins_over_generation_when_asset_attached(classifier: TurnClassifier) -> None:
    result = classifier.classify("/gambar remove the background", has_asset=True)

    assert result.path is TurnPath.IMAGE_EDIT
    assert result.edit_kind is ImageEditKind.REMOVE_BACKGROUND
    assert result.edit_supported


def test_edit_requires_asset(classifier: TurnClassifier) -> None:
    result = classifier.classify("remove the background")

    assert result.path is TurnPath.COMPLETION


@pytest.mark.parametrize(
    ("text", "kind"),
    [
        ("Hapus background foto ini", ImageEditKind.REMOVE_BACKGROUND),
        ("REMOVE BG please", ImageEditKind.REMOVE_BACKGROUND),
        ("make it a cartoon", ImageEditKind.CARTOON),
        ("can you upscale this?", ImageEditKind.UPSCALE),
        ("Edit this image", ImageEditKind.GENERAL),
    ],
)
def test_edit_kinds(classifier: TurnClassifier, text: str, kind: ImageEditKind) -> None:
    result = classifier.classify(text, has_asset=True)

    assert result.path is TurnPath.IMAGE_EDIT
    assert result.edit_kind is kind


def test_only_background_removal_is_supported(classifier: TurnClassifier) -> None:
    assert not classifier.classify("blur the face", has_asset=True).edit_supported


def test_asset_without_edit_intent_falls_through(classifier: TurnClassifier) -> None:
    result = classifier.classify("what is in this picture?", has_asset=True)

    assert result.path is TurnPath.COMPLETION


@pytest.mark.parametrize(
    ("text", "prompt"),
    [
        ("/gambar a red fox in snow", "a red fox in snow"),
        ("/IMAGE sunset over the sea", "sunset over the sea"),
        ("Generate a picture of a lighthouse", "a lighthouse"),
        ("please draw an image of two cats", "two cats"),
        ("Buatkan gambar kucing lucu", "kucing lucu"),
    ],
)
def test_generation_strips_command(classifier: TurnClassifier, text: str, prompt: str) -> None:
    result = classifier.classify(text)

    assert result.path is TurnPath.IMAGE_GENERATION
    assert result.prompt == prompt


def test_generation_command_without_prompt_is_completion(classifier: TurnClassifier) -> None:
    assert classifier.classify("/gambar").path is TurnPath.COMPLETION


def test_generation_ignored_when_asset_attached(classifier: TurnClassifier) -> None:
    result = classifier.classify("/gambar a red fox", has_asset=True)

    assert result.path is TurnPath.COMPLETION


@pytest.mark.parametrize(
    "text",
    ["Who made this?", "siapa pembuat aplikasi ini", "Tentang owner dong"],
)
def test_owner_questions_get_canned_answer(classifier: TurnClassifier, text: str) -> None:
    result = classifier.classify(text)

    assert result.path is TurnPath.CANNED
    assert "GimnasIrwandi" in (result.canned_answer or "")


@pytest.mark.parametrize("text", ["siapa itu gimnas?", "Who is Gimnas", "gimnas itu siapa"])
def test_creator_questions_get_canned_answer(classifier: TurnClassifier, text: str) -> None:
    result = classifier.classify(text)

    assert result.path is TurnPath.CANNED
    assert result.canned_answer == "Gimnas is the creator of this AI."


def test_generic_developer_mention_is_not_canned(classifier: TurnClassifier) -> None:
    assert classifier.classify("I am a developer learning Rust").path is TurnPath.COMPLETION


def test_rule_table_from_file(tmp_path: Path) -> None:
    rules_path = tmp_path / "rules.json"
    rules_path.write_text(
        json.dumps(
            {
                "canned": [
                    {"name": "hours", "patterns": [r"opening\s+hours"], "answer": "9 to 5."}
                ]
            }
        ),
        encoding="utf-8",
    )

    classifier = TurnClassifier(load_rule_table(rules_path))

    assert classifier.classify("What are your opening hours?").canned_answer == "9 to 5."
    assert classifier.classify("/gambar a fox").path is TurnPath.COMPLETION


def test_invalid_rule_file_is_configuration_error(tmp_path: Path) -> None:
    rules_path = tmp_path / "rules.json"
    rules_path.write_text(
        json.dumps({"canned": [{"name": "bad", "patterns": ["("], "answer": "x"}]}),
        encoding="utf-8",
    )

    with pytest.raises(ConfigurationError):
        load_rule_table(rules_path)


def test_missing_rule_file_is_configuration_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        load_rule_table(tmp_path / "absent.json")


def test_default_table_validates() -> None:
    table = load_rule_table(None)

    assert isinstance(table, RuleTable)
    assert [rule.name for rule in table.canned] == ["owner", "creator"]
