"""Name normalization used for entity matching.

Canonical names are stored as the user stated them (trimmed), while every
lookup and duplicate check goes through ``normalize_name`` so that "Holly",
" holly" and "HOLLY" compare equal.
"""

import re
import unicodedata
from typing import Iterable, List

_WHITESPACE = re.compile(r"\s+")
_EDGE_PUNCTUATION = " \t\r\n.,;:!?\"'()[]{}"


def clean_name(text: str) -> str:
    """Trim surrounding whitespace/punctuation and collapse inner whitespace.

    Casing is preserved; this is the form written to ``canonical_name``.
    """
    if not text:
        return ""
    text = unicodedata.normalize("NFKC", text)
    text = _WHITESPACE.sub(" ", text)
    return text.strip(_EDGE_PUNCTUATION)


def normalize_name(text: str) -> str:
    """Return the comparison key for a name (cleaned and casefolded).

    Args:
        text: Raw or canonical name

    Returns:
        str: Normalized key, empty string for empty input
    """
    return clean_name(text).casefold()


def unique_preserving_order(names: Iterable[str]) -> List[str]:
    """De-duplicate names by normalized key, keeping the first spelling seen."""
    seen = set()
    result = []
    for name in names:
        key = normalize_name(name)
        if key and key not in seen:
            seen.add(key)
            result.append(name)
    return result
