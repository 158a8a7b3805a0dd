"""
Signature Service for Inbound Webhooks

HMAC-SHA256 over the raw request body with a shared secret. The signature is
computed over the exact bytes received, never over re-serialized JSON.
"""
import hmac
import hashlib
from typing import Optional, Union


def sign_payload(payload: Union[bytes, str], secret_key: str) -> str:
    """
    Sign a raw webhook body using HMAC-SHA256.

    Args:
        payload: Raw request body
        secret_key: Shared secret for this webhook source

    Returns:
        Hexadecimal digest
    """
    if isinstance(payload, str):
        payload = payload.encode('utf-8')

    return hmac.new(
        secret_key.encode('utf-8'),
        payload,
        hashlib.sha256
    ).hexdigest()


def verify_signature(
    payload: Union[bytes, str],
    signature: Optional[str],
    secret_key: str
) -> bool:
    """
    Verify a webhook signature using constant-time comparison.

    Accepts the bare hex digest or the "sha256=<hex>" form some providers send.

    Args:
        payload: Raw request body
        signature: Value of the provider's signature header
        secret_key: Shared secret for this webhook source

    Returns:
        True if signature valid, False otherwise (including missing signature)
    """
    if not signature or not secret_key:
        return False

    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]

    expected = sign_payload(payload, secret_key)

    # Constant-time comparison
    return hmac.compare_digest(
        expected.encode('utf-8'),
        provided.lower().encode('utf-8')
    )
