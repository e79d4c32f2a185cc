"""
OTP Pipeline — Phone Number Normalization

Converts Indonesian mobile numbers written in any of the common
encodings into one canonical local form (0-prefixed digits):

    08xxxxxxxxxx     already local
    +628xxxxxxxxx    international with plus
    628xxxxxxxxx     international without plus (only when longer than
                     10 characters, so a local number that happens to
                     start with 62 is not mangled)
    8xxxxxxxxx       national number without trunk zero

The result must start with a known operator prefix and be 10-15 digits
long. normalize() never raises: anything it cannot accept comes back
as the empty string.

Usage:
    from core.phone import normalize, parse_phone_list

    normalize("+62 811-2233-4455")   # "081122334455"
    normalize("0812x")               # ""
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from core.exceptions import ValidationError

REJECTED = ""

MIN_LENGTH = 10
MAX_LENGTH = 15

# Four-digit operator codes (Telkomsel, Indosat, XL, Axis, Three, Smartfren)
OPERATOR_PREFIXES: frozenset[str] = frozenset({
    "0811", "0812", "0813", "0814", "0815", "0816", "0817", "0818", "0819",
    "0821", "0822", "0823", "0831", "0832", "0833", "0838",
    "0851", "0852", "0853", "0855", "0856", "0857", "0858", "0859",
    "0877", "0878", "0881", "0882", "0883", "0884", "0885", "0886",
    "0887", "0888", "0889", "0895", "0896", "0897", "0898", "0899",
})

_PUNCTUATION = re.compile(r"[\s\-().]")
_NON_DIGIT = re.compile(r"\D")
_LIST_SEPARATORS = re.compile(r"[\s,;|]+")
_LIST_TERMINATORS = {"done", "/end"}


def _accept_local(candidate: str) -> bool:
    return (
        candidate[:4] in OPERATOR_PREFIXES
        and MIN_LENGTH <= len(candidate) <= MAX_LENGTH
    )


def normalize(value) -> str:
    """Return the canonical 0-prefixed phone, or REJECTED ("")."""
    if value is None:
        return REJECTED
    cleaned = _PUNCTUATION.sub("", str(value).strip())
    if not cleaned:
        return REJECTED

    if cleaned.startswith("+62"):
        cleaned = "0" + cleaned[3:]
    elif cleaned.startswith("62") and len(cleaned) > 10:
        cleaned = "0" + cleaned[2:]

    digits = _NON_DIGIT.sub("", cleaned)
    if not digits:
        return REJECTED

    if digits.startswith("0"):
        return digits if _accept_local(digits) else REJECTED

    if len(digits) >= 9:
        # Covers both "8..." and any other leading digit
        candidate = "0" + digits
        if _accept_local(candidate):
            return candidate

    return REJECTED


def is_valid(value) -> bool:
    return normalize(value) != REJECTED


def require_phone(value) -> str:
    """Like normalize(), but raises ValidationError instead of returning ""."""
    phone = normalize(value)
    if phone == REJECTED:
        raise ValidationError(f"invalid phone number: {value!r}", value=value)
    return phone


@dataclass
class ParsedPhoneList:
    """Result of parsing a pasted block of phone numbers."""
    phones: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)


def parse_phone_list(text: str) -> ParsedPhoneList:
    """
    Split free-form text into canonical phones.

    Separators are whitespace, commas, semicolons and pipes. DONE and
    /end markers and tokens without a digit are ignored. Canonical
    duplicates are dropped, keeping the first occurrence.
    """
    result = ParsedPhoneList()
    seen: set[str] = set()
    for token in _LIST_SEPARATORS.split(text or ""):
        token = token.strip()
        if not token or token.lower() in _LIST_TERMINATORS:
            continue
        if not any(ch.isdigit() for ch in token):
            continue
        phone = normalize(token)
        if phone == REJECTED:
            result.skipped.append(token)
        elif phone in seen:
            result.duplicates.append(token)
        else:
            seen.add(phone)
            result.phones.append(phone)
    return result
