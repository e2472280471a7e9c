# tests/unit/services/test_webhook_signature.py
import base64
import hashlib
import hmac

import pytest

from cardsync.services.webhook_signature import SignatureResult, compute_signature, verify_signature

SECRET = "shpss_test_secret"
BODY = b'{"id": 820982911946154508, "financial_status": "paid"}'


def _shopify_hmac(body: bytes, secret: str) -> str:
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


def test_compute_signature_matches_shopify_format():
    assert compute_signature(BODY, SECRET) == _shopify_hmac(BODY, SECRET)


def test_valid_signature_accepted():
    assert verify_signature(BODY, _shopify_hmac(BODY, SECRET), SECRET) == SignatureResult.VALID


def test_signature_is_over_raw_bytes_not_reserialised_json():
    # Same JSON document, different whitespace: the signature must not carry over
    reformatted = b'{"id":820982911946154508,"financial_status":"paid"}'
    signature = _shopify_hmac(BODY, SECRET)

    assert verify_signature(reformatted, signature, SECRET) == SignatureResult.INVALID


def test_one_byte_change_invalidates():
    signature = _shopify_hmac(BODY, SECRET)
    tampered = BODY.replace(b"paid", b"pain")

    assert verify_signature(tampered, signature, SECRET) == SignatureResult.INVALID


def test_wrong_secret_rejected():
    assert verify_signature(BODY, _shopify_hmac(BODY, "other"), SECRET) == SignatureResult.INVALID


@pytest.mark.parametrize("signature", [None, "", "not base64 at all!!", "Zm9v"])
def test_missing_or_malformed_signature_is_invalid(signature):
    assert verify_signature(BODY, signature, SECRET) == SignatureResult.INVALID


@pytest.mark.parametrize("secret", [None, ""])
def test_no_secret_configured_is_invalid(secret):
    assert verify_signature(BODY, _shopify_hmac(BODY, "x"), secret) == SignatureResult.INVALID


def test_empty_body_can_still_be_verified():
    assert verify_signature(b"", _shopify_hmac(b"", SECRET), SECRET) == SignatureResult.VALID
