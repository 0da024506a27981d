"""Tests for webhook signature checks."""

import base64
import hashlib
import hmac

from agrimarket.utils.security import (
    paypack_signature,
    verify_flutterwave_signature,
    verify_paypack_signature,
)


def test_flutterwave_hash_must_match():
    assert verify_flutterwave_signature("secret", "secret")
    assert not verify_flutterwave_signature("other", "secret")
    assert not verify_flutterwave_signature(None, "secret")
    assert not verify_flutterwave_signature("", "secret")


def test_paypack_signature_is_base64_hmac_of_raw_body():
    body = b'{"data":{"ref":"abc","status":"successful"}}'
    expected = base64.b64encode(hmac.new(b"key", body, hashlib.sha256).digest()).decode()

    assert paypack_signature(body, "key") == expected
    assert verify_paypack_signature(body, expected, "key")


def test_paypack_signature_rejects_modified_body():
    body = b'{"data":{"ref":"abc","status":"successful"}}'
    signature = paypack_signature(body, "key")

    assert not verify_paypack_signature(body + b" ", signature, "key")
    assert not verify_paypack_signature(body, signature, "other-key")
    assert not verify_paypack_signature(body, None, "key")
