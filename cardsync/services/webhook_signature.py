# cardsync/services/webhook_signature.py
import base64
import binascii
import hashlib
import hmac
import logging
from enum import Enum
from typing import Optional, Union

logger = logging.getLogger(__name__)


class SignatureResult(str, Enum):
    VALID = "valid"
    INVALID = "invalid"


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Base64 HMAC-SHA256 of the raw body, as Shopify sends in X-Shopify-Hmac-Sha256"""
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(
    raw_body: Union[bytes, bytearray, None],
    signature: Optional[str],
    secret: Optional[str],
) -> SignatureResult:
    """
    Check the signature against the exact bytes received, before any JSON
    parsing. Never raises: anything malformed is simply INVALID.
    """
    if not secret or not signature or raw_body is None:
        return SignatureResult.INVALID

    try:
        provided = base64.b64decode(signature.strip(), validate=True)
    except (binascii.Error, ValueError):
        return SignatureResult.INVALID

    try:
        expected = hmac.new(secret.encode("utf-8"), bytes(raw_body), hashlib.sha256).digest()
    except (TypeError, UnicodeEncodeError):
        logger.warning("Could not compute webhook HMAC", exc_info=True)
        return SignatureResult.INVALID

    if hmac.compare_digest(provided, expected):
        return SignatureResult.VALID
    return SignatureResult.INVALID
