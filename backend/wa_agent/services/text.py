from __future__ import annotations

import re
import unicodedata
from typing import Optional

# Single words only count when they are the whole message; phrases match anywhere.
OPT_OUT_WORDS = frozenset(
    {
        "стоп",
        "stop",
        "отписаться",
        "отписка",
        "отпишите",
        "unsubscribe",
        "хватит",
    }
)
OPT_OUT_PHRASES = (
    "не пишите",
    "не писать",
    "не пиши мне",
    "больше не пишите",
    "хватит писать",
    "отпишите меня",
    "удалите мой номер",
    "не беспокойте",
    "stop messaging",
    "do not message",
    "dont message",
)

_HORIZONTAL_SPACE_RE = re.compile(r"[ \t\u00a0]+")
_PUNCTUATION_RE = re.compile(r"[^\w\s]+")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_text(value: Optional[str]) -> str:
    if not value:
        return ""
    text = unicodedata.normalize("NFC", value).replace("\r\n", "\n").replace("\r", "\n")
    lines = [_HORIZONTAL_SPACE_RE.sub(" ", line).strip() for line in text.split("\n")]
    return "\n".join(lines).strip()


def fold_text(value: str) -> str:
    """Lower-case, strip diacritics and punctuation, collapse whitespace."""
    decomposed = unicodedata.normalize("NFKD", value.casefold())
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    stripped = _PUNCTUATION_RE.sub(" ", stripped.replace("'", ""))
    return _WHITESPACE_RE.sub(" ", stripped).strip()


_FOLDED_WORDS = frozenset(fold_text(word) for word in OPT_OUT_WORDS)
_FOLDED_PHRASES = tuple(fold_text(phrase) for phrase in OPT_OUT_PHRASES)


def has_opt_out(text: str) -> bool:
    folded = fold_text(text)
    if not folded:
        return False
    if folded in _FOLDED_WORDS:
        return True
    padded = f" {folded} "
    return any(f" {phrase} " in padded for phrase in _FOLDED_PHRASES)
