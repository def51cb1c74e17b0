"""
Webhook authentication helpers.
"""

import hmac
import hashlib
import logging

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def _same(a: str, b: str) -> bool:
    # compare_digest only accepts ASCII str, so compare the encoded bytes
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify the X-Hub-Signature-256 header sent with provider webhooks.

    Args:
        body: Raw request body bytes
        signature: Header value, "sha256=<hex digest>" (prefix optional)
        secret: App secret shared with the provider

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature:
        return False

    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]

    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    is_valid = _same(expected, signature.strip().lower())
    logger.debug(f"Webhook signature {'valid' if is_valid else 'invalid'}")
    return is_valid


def verify_subscription(mode: str | None, token: str | None, expected_token: str) -> bool:
    """Check the one-time webhook verification handshake parameters."""
    if mode != "subscribe" or token is None:
        return False
    return _same(token, expected_token)
