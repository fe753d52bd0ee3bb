"""
Permission token normalization.

Tokens are ``resource:action`` strings compared case- and
whitespace-insensitively: every boundary normalizes with these helpers.
"""
import re
from typing import Any, Iterable, List, Set


TOKEN_PATTERN = re.compile(r"^[a-z0-9_\-\.]+:[a-z0-9_\-\.\*]+$")


def normalize_permission(token: Any) -> str:
    """Trim and lowercase one token. Non-strings normalize to ``""``."""
    if not isinstance(token, str):
        return ""
    return token.strip().lower()


def normalize_permissions(tokens: Iterable[Any] | None) -> List[str]:
    """
    Normalize, drop empty/non-string entries and deduplicate, keeping first-seen order.
    
    ``None`` is treated as an empty list.
    """
    seen: Set[str] = set()
    normalized: List[str] = []
    for token in tokens or []:
        value = normalize_permission(token)
        if value and value not in seen:
            seen.add(value)
            normalized.append(value)
    return normalized


def is_valid_token(token: str) -> bool:
    """Whether an already-normalized token has the ``resource:action`` shape."""
    return bool(TOKEN_PATTERN.match(token))


def sorted_tokens(tokens: Iterable[str]) -> List[str]:
    """Stable list rendering of a token set for storage and responses."""
    return sorted(set(tokens))
