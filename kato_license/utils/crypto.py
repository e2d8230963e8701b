# kato_license/utils/crypto.py
import hmac
import hashlib
from typing import Mapping, Optional


def sign_payload(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, signature: str, secret: str) -> bool:
    """HMAC-SHA256 over the raw request bytes, compared in constant time."""
    if not signature or not secret:
        return False
    expected = sign_payload(payload, secret)
    return hmac.compare_digest(expected.encode(), signature.strip().lower().encode())


def match_signing_secret(payload: bytes, signature: str, secrets: Mapping[str, str]) -> Optional[str]:
    """
    Return the name of the first candidate secret (e.g. "live", "test") that
    validates the signature, or None if none does.
    """
    for mode, secret in secrets.items():
        if verify_signature(payload, signature, secret):
            return mode
    return None
