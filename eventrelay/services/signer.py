"""HMAC-SHA256 webhook signatures."""

import base64
import hashlib
import hmac
from typing import Optional

SIGNATURE_HEADER = "X-Webhook-Signature"


def sign(secret: bytes, body: bytes) -> str:
    """Return ``base64(HMAC-SHA256(secret, body))`` for the signature header."""
    digest = hmac.new(secret, body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify(secret: bytes, body: bytes, header: Optional[str]) -> bool:
    """Constant-time check of a received signature header."""
    if not header:
        return False
    try:
        received = header.strip().encode("ascii")
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(sign(secret, body).encode("ascii"), received)
