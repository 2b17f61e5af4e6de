"""
Helpers the handshake and the event handlers call to decide whether an
inbound value is well formed before it reaches a relay component.
"""

from __future__ import annotations
from typing import Any, Optional
from urllib.parse import parse_qs, urlsplit

# ========================================
#           INPUT VALIDATION HELPERS
# ========================================

def is_non_empty_str(value: Any) -> bool:
    """
    True for strings with at least one non-whitespace character.
    User identifiers are opaque, so this is the only shape check applied to them.
    """
    return isinstance(value, str) and bool(value.strip())

def bearer_token(header_value: Optional[str]) -> Optional[str]:
    """
    Extract the credential from an ``Authorization: Bearer <token>`` header.

    - The scheme is matched case-insensitively.
    - Returns None when the header is absent, uses another scheme, or carries an empty token.
    """
    if not header_value:
        return None
    scheme, _, token = header_value.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None

def query_param(path: str, name: str) -> Optional[str]:
    """
    Return the first value of query parameter ``name`` in a request path like '/socket?token=abc'.
    """
    values = parse_qs(urlsplit(path).query).get(name)
    if not values:
        return None
    return values[0] or None

