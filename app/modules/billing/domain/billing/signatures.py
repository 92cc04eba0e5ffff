"""Webhook signature verification over the exact received bytes."""

from __future__ import annotations

import hmac
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger()

DigestFactory = Callable[..., Any]


def compute_signature(payload: bytes, secret: str, digest: DigestFactory) -> str:
    """Hex HMAC of `payload` keyed with `secret`."""
    return hmac.new(secret.encode(), payload, digest).hexdigest()


def verify_signature(
    payload: bytes,
    signature: Optional[str],
    secret: Optional[str],
    digest: DigestFactory,
    *,
    provider: str,
) -> bool:
    """
    Verify a provider HMAC signature.

    Operates on the raw body before any JSON parsing; re-serialized JSON does not
    reproduce the provider's bytes. Fails closed when the secret or the signature
    is missing.
    """
    if not secret:
        logger.error("webhook_secret_not_configured", provider=provider)
        return False

    if not signature:
        logger.warning("webhook_missing_signature", provider=provider)
        return False

    expected = compute_signature(payload, secret, digest)
    is_valid = hmac.compare_digest(expected, signature.strip().lower())
    if not is_valid:
        logger.warning(
            "webhook_invalid_signature",
            provider=provider,
            provided_prefix=signature[:8] + "...",
        )
    return is_valid
