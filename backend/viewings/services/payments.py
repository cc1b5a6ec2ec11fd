from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from django.conf import settings
from django.db import transaction

from payments.models import PaymentTransaction
from payments.services import ledger
from payments.services.providers import get_provider
from viewings.models import ViewingRequest

logger = logging.getLogger(__name__)

SUPERSEDED_REASON = "Superseded by a new checkout session"


@dataclass
class PaymentSession:
    transaction: PaymentTransaction
    redirect_url: str


def _is_staff(user) -> bool:
    return bool(user and (user.is_staff or user.is_superuser))


def _retire(tx: PaymentTransaction) -> None:
    """Close out a transaction that will never be paid."""

    if tx.status in {PaymentTransaction.CREATED, PaymentTransaction.PENDING}:
        ledger.mark_failed(tx.id, SUPERSEDED_REASON)


def _supersede_pending(tx: PaymentTransaction) -> None:
    # The provider session must be closed first or the tenant could still pay it.
    if not get_provider(tx.provider).expire_checkout_session(tx):
        raise ValueError("A payment for this viewing request is already in progress.")
    _retire(tx)


def mark_payment_required(
    viewing: ViewingRequest,
    *,
    amount: Decimal,
    currency: str,
    provider: str,
) -> ViewingRequest:
    with transaction.atomic():
        viewing = ViewingRequest.objects.select_for_update().get(pk=viewing.pk)
        current = viewing.payment_transaction
        if current is not None and current.status in {
            PaymentTransaction.PENDING,
            PaymentTransaction.COMPLETED,
        }:
            raise ValueError(f"Viewing request already has a {current.status.lower()} payment.")

        tx = ledger.create_transaction(provider, amount, currency, str(viewing.id))
        if current is not None:
            _retire(current)
        viewing.payment_required = True
        viewing.payment_transaction = tx
        viewing.save(update_fields=["payment_required", "payment_transaction", "updated_at"])

    logger.info("Viewing request %s marked as payment-required, transaction=%s", viewing.id, tx.id)
    return viewing


def clear_payment_requirement(viewing: ViewingRequest) -> ViewingRequest:
    with transaction.atomic():
        viewing = ViewingRequest.objects.select_for_update().get(pk=viewing.pk)
        current = viewing.payment_transaction
        if current is not None:
            if current.status in {PaymentTransaction.PENDING, PaymentTransaction.COMPLETED}:
                raise ValueError(
                    f"Cannot clear the payment requirement while the payment is {current.status.lower()}."
                )
            _retire(current)
        viewing.payment_required = False
        viewing.payment_transaction = None
        viewing.save(update_fields=["payment_required", "payment_transaction", "updated_at"])

    logger.info("Payment requirement cleared for viewing request %s", viewing.id)
    return viewing


def _transaction_for_session(viewing: ViewingRequest, provider_name: str) -> PaymentTransaction:
    """Reuse a fresh transaction or open a new one in place of a stale one."""

    current = viewing.payment_transaction
    if current is not None:
        if current.status in {PaymentTransaction.COMPLETED, PaymentTransaction.REFUNDED}:
            raise ValueError(f"Payment for this viewing request is already {current.status.lower()}.")
        if current.status == PaymentTransaction.CREATED and current.provider == provider_name:
            return current
        if current.status == PaymentTransaction.PENDING:
            _supersede_pending(current)
        else:
            _retire(current)
        amount, currency = current.amount, current.currency
    else:
        amount = Decimal(settings.PAYMENTS_DEFAULT_AMOUNT)
        currency = settings.PAYMENTS_DEFAULT_CURRENCY

    tx = ledger.create_transaction(provider_name, amount, currency, str(viewing.id))
    viewing.payment_transaction = tx
    viewing.save(update_fields=["payment_transaction", "updated_at"])
    return tx


def create_payment_session(
    viewing: ViewingRequest,
    user,
    provider: str | None = None,
) -> PaymentSession:
    """
    Start a provider-hosted checkout for the tenant of a viewing request.

    Returns the PENDING transaction plus the URL the tenant must be sent to.
    The viewing row stays locked until the provider id is recorded. Provider
    failures surface as ``ProviderError`` and roll the ledger back so the
    tenant can retry. An open session is only replaced once the provider has
    expired it; otherwise ``ValueError`` is raised.
    """

    if viewing.tenant_id != user.pk:
        raise PermissionError("Not authorized to create a payment session for this viewing request")
    if not viewing.payment_required:
        raise ValueError("Payment is not required for this viewing request")
    if viewing.status != ViewingRequest.PENDING:
        raise ValueError(f"Viewing request is {viewing.status.lower()}; payment is no longer possible")

    current = viewing.payment_transaction
    adapter = get_provider(provider or (current.provider if current else settings.PAYMENTS_DEFAULT_PROVIDER))

    with transaction.atomic():
        viewing = ViewingRequest.objects.select_for_update().get(pk=viewing.pk)
        tx = _transaction_for_session(viewing, adapter.name)
        session = adapter.create_checkout_session(tx, viewing)
        tx = ledger.update_provider_details(tx.id, session.provider_transaction_id)

    logger.info(
        "Payment session created for viewing request %s transaction=%s provider_id=%s",
        viewing.id,
        tx.id,
        session.provider_transaction_id,
    )
    return PaymentSession(transaction=tx, redirect_url=session.redirect_url)


def get_payment_status(viewing: ViewingRequest, user) -> str | None:
    if viewing.tenant_id != user.pk and not _is_staff(user):
        raise PermissionError("Not authorized to view payment status for this viewing request")
    tx = viewing.payment_transaction
    return tx.status if tx is not None else None
