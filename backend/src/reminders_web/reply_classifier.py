from __future__ import annotations

from dataclasses import dataclass

COMPLETION_PAYLOAD_ID = "completed_habit"

_COMPLETION_WORDS = {"completed", "complete", "done"}
_COMPLETION_FRAGMENTS = ("complete", "done")
_AFFIRMATIVE_PREFIXES = ("yes", "yep")


@dataclass(frozen=True)
class ReplyClassification:
    completion: bool
    reason: str


def classify(
    text: str | None,
    is_button_payload: bool,
    *,
    completion_payload_id: str = COMPLETION_PAYLOAD_ID,
) -> ReplyClassification:
    raw = text or ""
    if is_button_payload and raw.strip() == completion_payload_id:
        return ReplyClassification(completion=True, reason="completion_payload")

    normalized = raw.strip().lower()
    if not normalized:
        return ReplyClassification(completion=False, reason="empty")
    if normalized in _COMPLETION_WORDS:
        return ReplyClassification(completion=True, reason="completion_word")
    # Substring match: "not done yet" also counts as completion.
    if any(fragment in normalized for fragment in _COMPLETION_FRAGMENTS):
        return ReplyClassification(completion=True, reason="completion_fragment")
    if normalized.startswith(_AFFIRMATIVE_PREFIXES):
        return ReplyClassification(completion=True, reason="affirmative")
    return ReplyClassification(completion=False, reason="generic_reply")
