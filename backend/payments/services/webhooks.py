"""
Webhook ingestion for Stripe and PayPal.

Both providers deliver at least once and out of order. Each notification is
authenticated, deduplicated, mapped onto one of three outcomes and applied to
the ledger; the reservation reconciler then reacts to the resulting
transaction.

| Outcome   | Stripe                          | PayPal                                           |
|-----------|---------------------------------|--------------------------------------------------|
| completed | checkout.session.completed      | CHECKOUT.ORDER.APPROVED, PAYMENT.CAPTURE.COMPLETED |
| failed    | payment_intent.payment_failed   | PAYMENT.CAPTURE.DENIED                           |
| refunded  | charge.refunded                 | PAYMENT.CAPTURE.REFUNDED                         |
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import stripe
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from payments.exceptions import InvalidPayload, InvalidSignature, TransactionNotFound
from payments.models import PaymentTransaction
from payments.services import ledger
from payments.services.event_store import get_event_store
from viewings.services import reconciler

logger = logging.getLogger(__name__)

COMPLETED = "completed"
FAILED = "failed"
REFUNDED = "refunded"

STRIPE_EVENT_OUTCOMES = {
    "checkout.session.completed": COMPLETED,
    "payment_intent.payment_failed": FAILED,
    "charge.refunded": REFUNDED,
}

PAYPAL_EVENT_OUTCOMES = {
    "CHECKOUT.ORDER.APPROVED": COMPLETED,
    "PAYMENT.CAPTURE.COMPLETED": COMPLETED,
    "PAYMENT.CAPTURE.DENIED": FAILED,
    "PAYMENT.CAPTURE.REFUNDED": REFUNDED,
}

FAILURE_REASONS = {
    PaymentTransaction.STRIPE: "Payment failed via Stripe webhook",
    PaymentTransaction.PAYPAL: "Payment denied via PayPal webhook",
}


@dataclass
class WebhookResult:
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    NOT_FOUND = "not_found"

    status: str
    event_type: str = ""
    transaction: PaymentTransaction | None = None
    detail: str = ""


@dataclass
class Target:
    """Where an outcome lands: an internal id, or the provider-side id."""

    transaction_id: int | None = None
    provider_transaction_id: str | None = None

    def __bool__(self) -> bool:
        return bool(self.transaction_id or self.provider_transaction_id)

    def __str__(self) -> str:
        if self.transaction_id:
            return f"tx={self.transaction_id}"
        return f"provider_id={self.provider_transaction_id}"


def _parse_json(payload: bytes | str, provider: str) -> dict[str, Any]:
    try:
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        event = json.loads(payload)
    except (UnicodeDecodeError, ValueError) as exc:
        logger.warning("%s webhook payload parsing failed: %s", provider, exc)
        raise InvalidPayload(f"Invalid {provider} webhook payload") from exc
    if not isinstance(event, dict):
        raise InvalidPayload(f"Invalid {provider} webhook payload")
    return event


def apply_outcome(outcome: str, target: Target, *, provider: str) -> PaymentTransaction:
    """Move the ledger and let the reconciler react to the new state."""

    if outcome == COMPLETED:
        if target.transaction_id:
            tx = ledger.mark_completed(target.transaction_id)
        else:
            tx = ledger.mark_completed_by_provider_id(target.provider_transaction_id)
        reconciler.on_payment_completed(tx)
    elif outcome == FAILED:
        reason = FAILURE_REASONS[provider]
        if target.transaction_id:
            tx = ledger.mark_failed(target.transaction_id, reason)
        else:
            tx = ledger.mark_failed_by_provider_id(target.provider_transaction_id, reason)
    elif outcome == REFUNDED:
        if target.transaction_id:
            tx = ledger.mark_refunded(target.transaction_id)
        else:
            tx = ledger.mark_refunded_by_provider_id(target.provider_transaction_id)
        reconciler.on_payment_refunded(tx)
    else:
        raise ValueError(f"Unknown payment outcome: {outcome}")
    return tx


def _apply_claimed(event_key: str | None, outcome: str, target: Target, *, provider: str, event_type: str) -> WebhookResult:
    store = get_event_store()
    if event_key is not None and not store.claim(event_key):
        logger.info("Duplicate %s webhook ignored: id=%s", provider, event_key)
        return WebhookResult(WebhookResult.DUPLICATE, event_type=event_type)

    try:
        tx = apply_outcome(outcome, target, provider=provider)
    except TransactionNotFound as exc:
        # Acknowledged: a retry would not make the transaction appear.
        logger.warning("%s webhook %s for unknown transaction: %s", provider, event_type, exc)
        return WebhookResult(WebhookResult.NOT_FOUND, event_type=event_type, detail=str(exc))
    except Exception:
        if event_key is not None:
            store.release(event_key)
        raise

    return WebhookResult(WebhookResult.PROCESSED, event_type=event_type, transaction=tx)


# ---- Stripe ----

def verify_stripe_event(payload: bytes | str, signature: str | None) -> dict[str, Any]:
    secret = getattr(settings, "STRIPE_WEBHOOK_SECRET", "")
    if not secret:
        raise ImproperlyConfigured("STRIPE_WEBHOOK_SECRET is not configured.")
    if not signature:
        raise InvalidSignature("Missing Stripe-Signature header")

    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidPayload("Invalid Stripe webhook payload") from exc

    try:
        stripe.WebhookSignature.verify_header(
            payload, signature, secret, settings.STRIPE_WEBHOOK_TOLERANCE
        )
    except stripe.error.SignatureVerificationError as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        raise InvalidSignature("Invalid Stripe webhook signature") from exc

    event = _parse_json(payload, "Stripe")
    if not event.get("id") or not event.get("type"):
        raise InvalidPayload("Stripe webhook missing id or type")
    return event


def stripe_target(event: dict[str, Any]) -> Target:
    data_object = (event.get("data") or {}).get("object") or {}
    if not isinstance(data_object, dict):
        return Target()
    if data_object.get("object") == "checkout.session":
        return Target(provider_transaction_id=data_object.get("id"))

    # PaymentIntents and Charges carry the metadata copied at session creation.
    metadata = data_object.get("metadata") or {}
    transaction_id = str(metadata.get("payment_transaction_id") or "")
    if transaction_id.isdigit():
        return Target(transaction_id=int(transaction_id))
    return Target(provider_transaction_id=data_object.get("id"))


def handle_stripe_webhook(payload: bytes | str, signature: str | None) -> WebhookResult:
    event = verify_stripe_event(payload, signature)
    event_type = event["type"]
    logger.info("Stripe webhook received: type=%s id=%s", event_type, event["id"])

    outcome = STRIPE_EVENT_OUTCOMES.get(event_type)
    if outcome is None:
        logger.info("Ignoring unhandled Stripe event type: %s", event_type)
        return WebhookResult(WebhookResult.IGNORED, event_type=event_type)

    target = stripe_target(event)
    if not target:
        logger.warning("Stripe webhook missing resource id for event type: %s", event_type)
        return WebhookResult(WebhookResult.IGNORED, event_type=event_type)

    if outcome == REFUNDED and not event["data"]["object"].get("refunded", False):
        logger.info("Ignoring partial Stripe refund for %s", target)
        return WebhookResult(WebhookResult.IGNORED, event_type=event_type)

    return _apply_claimed(
        f"stripe:{event['id']}",
        outcome,
        target,
        provider=PaymentTransaction.STRIPE,
        event_type=event_type,
    )


# ---- PayPal ----

def paypal_resource_id(event: dict[str, Any]) -> str | None:
    resource = event.get("resource")
    if not isinstance(resource, dict):
        return None
    # Capture and refund resources point back at the order we stored.
    related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
    order_id = related.get("order_id")
    if order_id:
        return str(order_id)
    resource_id = resource.get("id")
    return str(resource_id) if resource_id else None


def handle_paypal_webhook(payload: bytes | str) -> WebhookResult:
    event = _parse_json(payload, "PayPal")
    event_type = event.get("event_type")
    if not event_type or not isinstance(event_type, str):
        raise InvalidPayload("PayPal webhook missing event_type field")

    resource_id = paypal_resource_id(event)
    logger.info("PayPal webhook received: type=%s resourceId=%s", event_type, resource_id)
    if not resource_id:
        logger.warning("PayPal webhook missing resource ID for event type: %s", event_type)
        return WebhookResult(WebhookResult.IGNORED, event_type=event_type)

    outcome = PAYPAL_EVENT_OUTCOMES.get(event_type)
    if outcome is None:
        logger.info("Ignoring unhandled PayPal event type: %s", event_type)
        return WebhookResult(WebhookResult.IGNORED, event_type=event_type)

    # PayPal envelopes usually carry an id; replays without one are absorbed
    # by the ledger treating repeated settled states as no-ops.
    event_id = event.get("id")
    return _apply_claimed(
        f"paypal:{event_id}" if event_id else None,
        outcome,
        Target(provider_transaction_id=resource_id),
        provider=PaymentTransaction.PAYPAL,
        event_type=event_type,
    )
