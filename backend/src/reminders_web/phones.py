from __future__ import annotations

SUFFIX_DIGITS = 10


def normalize(raw: str | None) -> str:
    if not raw:
        return ""
    return "".join(ch for ch in raw if ch.isdigit())


def matches(a: str | None, b: str | None) -> bool:
    """Compare two phone identifiers across formatting and country-code differences.

    Numbers with at least ten digits match on their last ten digits; shorter
    numbers must match exactly. Two subscribers sharing a ten digit suffix
    under different country codes are indistinguishable here.
    """
    left = normalize(a)
    right = normalize(b)
    if not left or not right:
        return False
    if len(left) < SUFFIX_DIGITS or len(right) < SUFFIX_DIGITS:
        return left == right
    return left[-SUFFIX_DIGITS:] == right[-SUFFIX_DIGITS:]


def format_for_storage(raw: str, *, default_country_code: str) -> str:
    digits = normalize(raw)
    if len(digits) == SUFFIX_DIGITS and default_country_code:
        return f"{normalize(default_country_code)}{digits}"
    return digits


def mask_phone(raw: str | None) -> str:
    digits = normalize(raw)
    if len(digits) >= 4:
        return f"***{digits[-4:]}"
    return "***"
