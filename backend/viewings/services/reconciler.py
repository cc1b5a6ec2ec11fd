"""
Keeps viewing requests in step with their payment transactions.

The payment and the viewing request are separate aggregates written in
separate database transactions. Each reaction below acts only from the status
it expects and otherwise reports a ``NoOp``, so it can be re-run after a
redelivered webhook and never overrides a human decision that landed first.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from django.db import transaction

from credits import services as credit_services
from payments.models import PaymentTransaction
from viewings.models import ViewingRequest, ViewingRequestTransition
from viewings.services.transitions import record_transition

logger = logging.getLogger(__name__)

AUTO_CONFIRM_REASON = "auto-confirmed: payment completed"
AUTO_CANCEL_REASON = "auto-cancelled: payment refunded"


@dataclass(frozen=True)
class Applied:
    transition: ViewingRequestTransition


@dataclass(frozen=True)
class NoOp:
    reason: str


Outcome = Applied | NoOp


def _lock_linked_viewing(tx: PaymentTransaction) -> ViewingRequest | None:
    return (
        ViewingRequest.objects.select_for_update()
        .filter(payment_transaction_id=tx.id)
        .first()
    )


def _react(tx: PaymentTransaction, *, expected: str, target: str, reason: str) -> Outcome:
    with transaction.atomic():
        viewing = _lock_linked_viewing(tx)
        if viewing is None:
            logger.debug("No viewing request linked to payment transaction %s", tx.id)
            return NoOp(f"no viewing request linked to transaction {tx.id}")

        if viewing.status != expected:
            logger.info(
                "Viewing request %s left at %s after payment %s (expected %s)",
                viewing.id,
                viewing.status,
                tx.id,
                expected,
            )
            return NoOp(f"viewing request {viewing.id} is {viewing.status}, expected {expected}")

        if target == ViewingRequest.CONFIRMED:
            viewing.confirmed_datetime = viewing.proposed_datetime
        record = record_transition(viewing, target, reason=reason)
        logger.info(
            "Viewing request %s moved to %s after payment %s",
            viewing.id,
            target,
            tx.id,
        )
        return Applied(record)


def on_payment_completed(tx: PaymentTransaction) -> Outcome:
    outcome = _react(
        tx,
        expected=ViewingRequest.PENDING,
        target=ViewingRequest.CONFIRMED,
        reason=AUTO_CONFIRM_REASON,
    )

    viewing = ViewingRequest.objects.filter(payment_transaction_id=tx.id).first()
    if viewing is not None and tx.status == PaymentTransaction.COMPLETED:
        try:
            credit_services.on_payment_succeeded(viewing.tenant_id, viewing)
        except Exception:
            # The payment and viewing stay settled even when the credit ledger fails.
            logger.exception(
                "Credit allocation failed for viewing request %s after payment %s",
                viewing.id,
                tx.id,
            )
    return outcome


def on_payment_refunded(tx: PaymentTransaction) -> Outcome:
    return _react(
        tx,
        expected=ViewingRequest.CONFIRMED,
        target=ViewingRequest.CANCELLED,
        reason=AUTO_CANCEL_REASON,
    )
