# agrimarket/utils/security.py
import base64
import hashlib
import hmac
from typing import Optional

def verify_flutterwave_signature(header_value: Optional[str], secret_hash: str) -> bool:
    """The primary provider echoes the configured secret hash in ``verif-hash``"""
    if not header_value:
        return False
    return hmac.compare_digest(header_value.encode(), secret_hash.encode())

def paypack_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode(), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()

def verify_paypack_signature(raw_body: bytes, header_value: Optional[str], secret: str) -> bool:
    """HMAC-SHA256 over the raw request body, base64 encoded"""
    if not header_value:
        return False
    expected = paypack_signature(raw_body, secret)
    return hmac.compare_digest(header_value.encode(), expected.encode())
