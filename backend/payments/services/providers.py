from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Protocol
from uuid import uuid4

import requests
import stripe
from django.conf import settings
from django.utils.module_loading import import_string

from payments.exceptions import ProviderError, UnsupportedProvider
from payments.models import PaymentTransaction

if TYPE_CHECKING:
    from viewings.models import ViewingRequest

logger = logging.getLogger(__name__)

ZERO_DECIMAL_CURRENCIES = {
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
}


@dataclass
class CheckoutSession:
    provider_transaction_id: str
    redirect_url: str


class PaymentProvider(Protocol):
    name: str

    def create_checkout_session(
        self, transaction: PaymentTransaction, viewing_request: "ViewingRequest"
    ) -> CheckoutSession:
        ...

    def expire_checkout_session(self, transaction: PaymentTransaction) -> bool:
        ...


def to_minor_units(amount: Decimal, currency: str) -> int:
    exponent = 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2
    scaled = Decimal(amount) * (10 ** exponent)
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def build_checkout_preview_url(
    *, transaction: PaymentTransaction, viewing_request: "ViewingRequest", session_id: str
) -> str:
    return (
        f"{settings.FRONTEND_URL.rstrip('/')}/payments/preview?"
        f"viewing={viewing_request.id}&amount={transaction.amount}&session={session_id}"
    )


def _stub_session(
    transaction: PaymentTransaction, viewing_request: "ViewingRequest", session_id: str
) -> CheckoutSession:
    logger.info("Issuing stub checkout session %s for tx=%s", session_id, transaction.id)
    return CheckoutSession(
        provider_transaction_id=session_id,
        redirect_url=build_checkout_preview_url(
            transaction=transaction,
            viewing_request=viewing_request,
            session_id=session_id,
        ),
    )


def _line_item_name(viewing_request: "ViewingRequest") -> str:
    return f"Viewing Request #{viewing_request.id}"


class StripeProvider:
    """Stripe Checkout (card network style)."""

    name = PaymentTransaction.STRIPE

    def _should_use_stub(self) -> bool:
        if getattr(settings, "PAYMENTS_USE_STUB", False):
            return True
        return not getattr(settings, "STRIPE_SECRET_KEY", "")

    def build_session_params(
        self, transaction: PaymentTransaction, viewing_request: "ViewingRequest"
    ) -> dict:
        metadata = {
            "payment_transaction_id": str(transaction.id),
            "viewing_request_id": str(viewing_request.id),
        }
        return {
            "mode": "payment",
            "line_items": [
                {
                    "quantity": 1,
                    "price_data": {
                        "currency": transaction.currency.lower(),
                        "unit_amount": to_minor_units(transaction.amount, transaction.currency),
                        "product_data": {
                            "name": _line_item_name(viewing_request),
                            "description": "Payment for apartment viewing request",
                        },
                    },
                }
            ],
            "success_url": f"{settings.PAYMENT_SUCCESS_URL}?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": settings.PAYMENT_CANCEL_URL,
            "client_reference_id": str(transaction.id),
            "metadata": metadata,
            # Copied onto the PaymentIntent (and its charges) so failure and
            # refund events can be traced back to the transaction.
            "payment_intent_data": {"metadata": metadata},
        }

    def create_checkout_session(
        self, transaction: PaymentTransaction, viewing_request: "ViewingRequest"
    ) -> CheckoutSession:
        if self._should_use_stub():
            return _stub_session(transaction, viewing_request, f"cs_test_{uuid4().hex}")

        stripe.api_key = settings.STRIPE_SECRET_KEY
        try:
            session = stripe.checkout.Session.create(
                **self.build_session_params(transaction, viewing_request)
            )
        except stripe.error.StripeError as exc:
            logger.exception("Stripe session creation failed for tx=%s: %s", transaction.id, exc)
            raise ProviderError(f"Payment provider error: {exc}") from exc

        logger.info("Stripe checkout session created: id=%s for tx=%s", session.id, transaction.id)
        return CheckoutSession(provider_transaction_id=session.id, redirect_url=session.url)

    def expire_checkout_session(self, transaction: PaymentTransaction) -> bool:
        """Close an unpaid session. False means it may still be (or was) paid."""

        session_id = transaction.provider_transaction_id
        if self._should_use_stub() or not session_id:
            return True

        stripe.api_key = settings.STRIPE_SECRET_KEY
        try:
            session = stripe.checkout.Session.retrieve(session_id)
            if session.status == "expired":
                return True
            if session.status != "open":
                logger.info("Stripe session %s for tx=%s is %s, not expiring", session_id, transaction.id, session.status)
                return False
            stripe.checkout.Session.expire(session_id)
        except stripe.error.StripeError as exc:
            logger.warning("Could not expire Stripe session %s for tx=%s: %s", session_id, transaction.id, exc)
            return False

        logger.info("Stripe checkout session expired: id=%s for tx=%s", session_id, transaction.id)
        return True


@dataclass
class PayPalConfig:
    api_base: str           # https://api-m.sandbox.paypal.com OR https://api-m.paypal.com
    client_id: str
    client_secret: str
    timeout: int = 25


class PayPalClient:
    def __init__(self, cfg: PayPalConfig):
        self.cfg = cfg

    def _url(self, path: str) -> str:
        return f"{self.cfg.api_base.rstrip('/')}{path}"

    def _raise_for_status(self, r: requests.Response) -> dict:
        try:
            data = r.json()
        except ValueError:
            data = {}
        if r.status_code >= 400:
            message = data.get("message") or data.get("error_description") or r.text[:200]
            raise ProviderError(f"Payment provider error: PayPal {r.status_code}: {message}")
        return data

    def access_token(self) -> str:
        r = requests.post(
            self._url("/v1/oauth2/token"),
            auth=(self.cfg.client_id, self.cfg.client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
            timeout=self.cfg.timeout,
        )
        return self._raise_for_status(r)["access_token"]

    def create_order(self, payload: dict) -> dict:
        token = self.access_token()
        r = requests.post(
            self._url("/v2/checkout/orders"),
            json=payload,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "Prefer": "return=representation",
            },
            timeout=self.cfg.timeout,
        )
        return self._raise_for_status(r)


class PayPalProvider:
    """PayPal Orders v2 (wallet / redirect style)."""

    name = PaymentTransaction.PAYPAL

    def _should_use_stub(self) -> bool:
        if getattr(settings, "PAYMENTS_USE_STUB", False):
            return True
        return not (settings.PAYPAL_CLIENT_ID and settings.PAYPAL_CLIENT_SECRET)

    def client(self) -> PayPalClient:
        return PayPalClient(
            PayPalConfig(
                api_base=settings.PAYPAL_API_BASE,
                client_id=settings.PAYPAL_CLIENT_ID,
                client_secret=settings.PAYPAL_CLIENT_SECRET,
                timeout=settings.PAYPAL_TIMEOUT,
            )
        )

    def build_order_request(
        self, transaction: PaymentTransaction, viewing_request: "ViewingRequest"
    ) -> dict:
        return {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": str(transaction.id),
                    "custom_id": str(viewing_request.id),
                    "description": _line_item_name(viewing_request),
                    "amount": {
                        "currency_code": transaction.currency.upper(),
                        "value": f"{transaction.amount:.2f}",
                    },
                }
            ],
            "application_context": {
                "return_url": f"{settings.PAYMENT_SUCCESS_URL}?transaction_id={transaction.id}",
                "cancel_url": settings.PAYMENT_CANCEL_URL,
                "brand_name": settings.PAYPAL_BRAND_NAME,
                "user_action": "PAY_NOW",
            },
        }

    def create_checkout_session(
        self, transaction: PaymentTransaction, viewing_request: "ViewingRequest"
    ) -> CheckoutSession:
        if self._should_use_stub():
            return _stub_session(
                transaction, viewing_request, f"PAYPAL-TEST-{uuid4().hex[:17].upper()}"
            )

        try:
            order = self.client().create_order(self.build_order_request(transaction, viewing_request))
        except requests.RequestException as exc:
            logger.exception("PayPal order creation failed for tx=%s: %s", transaction.id, exc)
            raise ProviderError(f"Payment provider error: {exc}") from exc
        except ProviderError:
            logger.exception("PayPal rejected order creation for tx=%s", transaction.id)
            raise

        approval_url = next(
            (link.get("href") for link in order.get("links", []) if link.get("rel") in {"approve", "payer-action"}),
            None,
        )
        if not order.get("id") or not approval_url:
            raise ProviderError("Payment provider error: PayPal order response missing id or approval link")

        logger.info("PayPal order created: id=%s for tx=%s", order["id"], transaction.id)
        return CheckoutSession(provider_transaction_id=order["id"], redirect_url=approval_url)

    def expire_checkout_session(self, transaction: PaymentTransaction) -> bool:
        # Orders v2 has no cancel call, so a live order stays payable until it settles.
        return self._should_use_stub()


def get_provider(name: str | None) -> PaymentProvider:
    """Resolve a provider name (case-insensitive) to a configured adapter."""

    key = (name or "").strip().lower()
    if not key:
        raise UnsupportedProvider("Payment provider is required.")
    registry = getattr(settings, "PAYMENT_PROVIDERS", {})
    path = registry.get(key)
    if path is None:
        raise UnsupportedProvider(f"Unsupported payment provider: {name}")
    return import_string(path)()
