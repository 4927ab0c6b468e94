"""Term clean-up applied before a request reaches the ledger."""

from __future__ import annotations

import re
from typing import Iterable, Optional

_WHITESPACE = re.compile(r"\s+")
_EDGE_PUNCTUATION = re.compile(r"^[^\w]+|[^\w]+$", re.UNICODE)


def sanitize_term(term: Optional[str], stop_words: Optional[Iterable[str]] = None) -> str:
    """Collapse whitespace, trim edge punctuation and drop generic tokens.

    Returns an empty string when nothing meaningful is left; callers drop
    such requests.
    """
    if not isinstance(term, str):
        return ""
    cleaned = _WHITESPACE.sub(" ", term).strip()
    cleaned = _EDGE_PUNCTUATION.sub("", cleaned)
    if not cleaned:
        return ""

    stop = {word.lower() for word in stop_words or ()}
    if stop:
        tokens = [token for token in cleaned.split(" ") if _strip_token(token).lower() not in stop]
        cleaned = _EDGE_PUNCTUATION.sub("", " ".join(tokens))
    return cleaned


def _strip_token(token: str) -> str:
    return _EDGE_PUNCTUATION.sub("", token)


def normalize_term(term: str) -> str:
    return term.lower()


__all__ = ["sanitize_term", "normalize_term"]
