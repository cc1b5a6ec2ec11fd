from __future__ import annotations

import logging
from decimal import Decimal

from django.db import transaction
from django.utils import timezone

from payments.exceptions import InvalidStateTransition, TransactionNotFound, UnsupportedProvider
from payments.models import PaymentTransaction

logger = logging.getLogger(__name__)


def normalize_provider(provider: str | None) -> str:
    name = (provider or "").strip().lower()
    if not name:
        raise UnsupportedProvider("Payment provider is required.")
    if name not in dict(PaymentTransaction.PROVIDERS):
        raise UnsupportedProvider(f"Unsupported payment provider: {provider}")
    return name


def create_transaction(
    provider: str,
    amount: Decimal | str,
    currency: str,
    reference: str,
) -> PaymentTransaction:
    tx = PaymentTransaction.objects.create(
        provider=normalize_provider(provider),
        amount=Decimal(str(amount)),
        currency=currency.upper(),
        reference=str(reference),
    )
    logger.info(
        "Created payment transaction %s for provider=%s amount=%s %s ref=%s",
        tx.id,
        tx.provider,
        tx.amount,
        tx.currency,
        tx.reference,
    )
    return tx


def _lock(transaction_id: int) -> PaymentTransaction:
    try:
        return PaymentTransaction.objects.select_for_update().get(pk=transaction_id)
    except PaymentTransaction.DoesNotExist:
        raise TransactionNotFound(f"Payment transaction not found: {transaction_id}") from None


def _lock_by_provider_id(provider_transaction_id: str) -> PaymentTransaction:
    try:
        return PaymentTransaction.objects.select_for_update().get(
            provider_transaction_id=provider_transaction_id
        )
    except PaymentTransaction.DoesNotExist:
        raise TransactionNotFound(
            f"Payment transaction not found for provider id: {provider_transaction_id}"
        ) from None


def _is_repeat(tx: PaymentTransaction, target: str) -> bool:
    if tx.status == target and target in PaymentTransaction.SETTLED_STATUSES:
        logger.info("Payment transaction %s already %s, ignoring repeat", tx.id, target)
        return True
    return False


def _validate(tx: PaymentTransaction, target: str) -> None:
    if not tx.can_transition_to(target):
        logger.warning(
            "Rejected payment transaction %s transition %s -> %s", tx.id, tx.status, target
        )
        raise InvalidStateTransition(tx.status, target)


def _apply(tx: PaymentTransaction, target: str, **changes) -> PaymentTransaction:
    if _is_repeat(tx, target):
        return tx
    _validate(tx, target)
    tx.status = target
    for field, value in changes.items():
        setattr(tx, field, value)
    tx.save(update_fields=["status", *changes.keys(), "updated_at"])
    logger.info("Payment transaction %s transitioned to %s", tx.id, target)
    return tx


@transaction.atomic
def mark_pending(transaction_id: int) -> PaymentTransaction:
    return _apply(_lock(transaction_id), PaymentTransaction.PENDING)


@transaction.atomic
def mark_completed(transaction_id: int) -> PaymentTransaction:
    return _apply(
        _lock(transaction_id),
        PaymentTransaction.COMPLETED,
        completed_at=timezone.now(),
    )


@transaction.atomic
def mark_failed(transaction_id: int, reason: str) -> PaymentTransaction:
    return _apply(
        _lock(transaction_id),
        PaymentTransaction.FAILED,
        failure_reason=(reason or "")[:500],
    )


@transaction.atomic
def mark_refunded(transaction_id: int) -> PaymentTransaction:
    return _apply(_lock(transaction_id), PaymentTransaction.REFUNDED)


@transaction.atomic
def update_provider_details(transaction_id: int, provider_transaction_id: str) -> PaymentTransaction:
    """Attach the provider-side id and move the transaction to PENDING."""

    tx = _lock(transaction_id)
    _validate(tx, PaymentTransaction.PENDING)
    tx.provider_transaction_id = provider_transaction_id
    tx.status = PaymentTransaction.PENDING
    tx.save(update_fields=["provider_transaction_id", "status", "updated_at"])
    logger.info(
        "Payment transaction %s updated with provider id %s and marked PENDING",
        tx.id,
        provider_transaction_id,
    )
    return tx


@transaction.atomic
def mark_completed_by_provider_id(provider_transaction_id: str) -> PaymentTransaction:
    tx = _lock_by_provider_id(provider_transaction_id)
    return mark_completed(tx.id)


@transaction.atomic
def mark_failed_by_provider_id(provider_transaction_id: str, reason: str) -> PaymentTransaction:
    tx = _lock_by_provider_id(provider_transaction_id)
    return mark_failed(tx.id, reason)


@transaction.atomic
def mark_refunded_by_provider_id(provider_transaction_id: str) -> PaymentTransaction:
    tx = _lock_by_provider_id(provider_transaction_id)
    return mark_refunded(tx.id)


def find_by_provider_id(provider_transaction_id: str) -> PaymentTransaction | None:
    return PaymentTransaction.objects.filter(provider_transaction_id=provider_transaction_id).first()


def find_by_reference(reference: str) -> list[PaymentTransaction]:
    return list(PaymentTransaction.objects.filter(reference=str(reference)))
