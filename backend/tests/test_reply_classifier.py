from __future__ import annotations

import pytest

from reminders_web.reply_classifier import COMPLETION_PAYLOAD_ID, classify


@pytest.mark.parametrize(
    "text",
    ["Completed", "  DONE ", "complete", "I am done", "yes", "Yep, finished", "task completed!", "not done yet"],
)
def test_completion_texts(text: str) -> None:
    assert classify(text, False).completion is True


@pytest.mark.parametrize("text", ["", "   ", "ok", "later", "no", "will do it tonight"])
def test_non_completion_texts(text: str) -> None:
    assert classify(text, False).completion is False


def test_completion_payload_id_is_completion_only_for_button_input() -> None:
    result = classify(COMPLETION_PAYLOAD_ID, True)
    assert result.completion is True
    assert result.reason == "completion_payload"

    typed = classify(COMPLETION_PAYLOAD_ID, False)
    assert typed.reason != "completion_payload"


def test_other_button_payloads_fall_back_to_text_rules() -> None:
    assert classify("snooze", True).completion is False
    assert classify("done_today", True).completion is True


def test_custom_payload_id() -> None:
    assert classify("habit_ok", True, completion_payload_id="habit_ok").completion is True


def test_reasons_follow_rule_order() -> None:
    assert classify("done", False).reason == "completion_word"
    assert classify("all done", False).reason == "completion_fragment"
    assert classify("yes!", False).reason == "affirmative"
    assert classify("", False).reason == "empty"
    assert classify("hello", False).reason == "generic_reply"
