from __future__ import annotations

import base64
import binascii
import hmac
from typing import Optional, Tuple


def parse_basic_auth(header: Optional[str]) -> Optional[Tuple[str, str]]:
    """Decode an `Authorization: Basic ...` header into (username, password).

    Returns None for a missing, non-Basic or malformed header.
    """
    if not header or not isinstance(header, str):
        return None
    parts = header.strip().split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "basic":
        return None
    try:
        decoded = base64.b64decode(parts[1].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    user, sep, password = decoded.partition(":")
    if not sep:
        return None
    return (user, password)


def is_authorized(header: Optional[str], username: Optional[str], password: Optional[str]) -> bool:
    """Check a request's Authorization header against configured credentials.

    Authentication is disabled (always True) unless both username and password
    are configured.
    """
    if not username or not password:
        return True
    creds = parse_basic_auth(header)
    if creds is None:
        return False
    user_ok = hmac.compare_digest(creds[0].encode("utf-8"), username.encode("utf-8"))
    pass_ok = hmac.compare_digest(creds[1].encode("utf-8"), password.encode("utf-8"))
    return user_ok and pass_ok
