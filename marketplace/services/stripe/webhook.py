"""Stripe webhook signature verification."""

import json

import stripe

from marketplace.core.errors import AuthenticationError, ValidationFailedError


def verify_webhook(
    payload: bytes,
    signature_header: str | None,
    secret: str,
    tolerance_seconds: int = 300,
) -> dict:
    """Verify a ``Stripe-Signature`` header and return the event as a plain dict.

    Signature and timestamp tolerance (replay protection) are checked by
    ``stripe.Webhook.construct_event``.
    """
    if not secret:
        raise AuthenticationError("Webhook secret is not configured")
    if not signature_header:
        raise AuthenticationError("Missing Stripe-Signature header")

    try:
        stripe.Webhook.construct_event(payload, signature_header, secret, tolerance=tolerance_seconds)
    except stripe.SignatureVerificationError as exc:
        raise AuthenticationError("Invalid webhook signature") from exc
    except ValueError as exc:
        raise ValidationFailedError("Webhook payload is not valid JSON") from exc
    return json.loads(payload)
