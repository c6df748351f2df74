"""
Webhook signing.

HMAC-SHA256 over the raw payload bytes, keyed by the endpoint secret.
"""
import hashlib
import hmac
import secrets

from relay.constants import SECRET_BYTES


def _to_bytes(value: str | bytes) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def sign(payload: str | bytes, secret: str) -> str:
    """
    Compute the hex HMAC-SHA256 signature of a payload.
    
    Args:
        payload: Raw request body exactly as it will be sent
        secret: Endpoint signing secret
        
    Returns:
        Lowercase hex digest
    """
    return hmac.new(
        _to_bytes(secret),
        _to_bytes(payload),
        hashlib.sha256
    ).hexdigest()


def verify(payload: str | bytes, signature: str, secret: str) -> bool:
    """Recompute the signature and compare in constant time."""
    if not signature:
        return False
    expected = sign(payload, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))


def generate_secret() -> str:
    """32 random bytes, hex encoded."""
    return secrets.token_hex(SECRET_BYTES)
