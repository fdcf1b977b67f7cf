"""HMAC-SHA256 signing for inbound session callbacks.

Signatures are base64url encoded without padding and computed over the
exact raw request body.  A missing secret never verifies.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
from typing import Optional, Union

logger = logging.getLogger("refinery.signing")

SIGNATURE_HEADER = "x-callback-signature"


def _as_bytes(value: Union[str, bytes]) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def sign_body(body: Union[str, bytes], secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), _as_bytes(body), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def verify_signature(body: Union[str, bytes], signature: Optional[str], secret: Optional[str]) -> bool:
    if not secret:
        logger.warning("Callback secret not configured; rejecting signed request")
        return False
    if not signature:
        return False
    padded = signature.strip() + "=" * (-len(signature.strip()) % 4)
    try:
        provided = base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, ValueError, UnicodeEncodeError):
        return False
    expected = hmac.new(secret.encode("utf-8"), _as_bytes(body), hashlib.sha256).digest()
    return hmac.compare_digest(expected, provided)
