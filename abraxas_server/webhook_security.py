"""
Webhook signature utilities.

Sandboxes sign every callback with HMAC-SHA256 over the raw request body,
keyed by the per-entity webhook secret, and send it as
``X-Webhook-Signature: sha256=<hex>``. Verification always happens on the
raw bytes, before the body is parsed.
"""

import hashlib
import hmac
import secrets
from typing import Optional, Union

SIGNATURE_HEADER = 'X-Webhook-Signature'
SIGNATURE_PREFIX = 'sha256='

Body = Union[str, bytes]


def generate_webhook_secret() -> str:
    """Generate a random webhook secret (32 bytes, hex encoded)."""
    return secrets.token_hex(32)


def _to_bytes(value: Body) -> bytes:
    return value.encode('utf-8') if isinstance(value, str) else value


def compute_signature(body: Body, secret: str) -> str:
    """Return the hex HMAC-SHA256 digest of ``body`` keyed by ``secret``."""
    return hmac.new(
        secret.encode('utf-8'), _to_bytes(body), hashlib.sha256
    ).hexdigest()


def generate_webhook_signature(body: Body, secret: str) -> str:
    """Generate the header value for a payload.

    Returns:
        Signature in format "sha256=<hex_digest>"
    """
    return f'{SIGNATURE_PREFIX}{compute_signature(body, secret)}'


def verify_webhook_signature(
    body: Body, signature: Optional[str], secret: str
) -> bool:
    """Verify a webhook signature.

    Args:
        body: The raw request body, exactly as received
        signature: The header value, with or without the "sha256=" prefix
        secret: The webhook signing secret of the targeted entity

    Returns:
        True if the signature is valid, False otherwise
    """
    if not signature or not secret:
        return False

    provided = signature
    if provided.startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]

    expected = compute_signature(body, secret)

    provided_bytes = provided.encode('utf-8')
    expected_bytes = expected.encode('utf-8')
    if len(provided_bytes) != len(expected_bytes):
        return False

    # Constant-time comparison to prevent timing attacks
    return hmac.compare_digest(provided_bytes, expected_bytes)
