import hashlib
import hmac
import json
import time
from datetime import timedelta

import pytest
from django.contrib.auth import get_user_model
from django.core.cache import caches
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APIClient

from payments.services import ledger
from payments.services.event_store import get_event_store
from viewings.models import ViewingRequest

STRIPE_TEST_SECRET = "whsec_test_secret"


def sign_stripe_payload(payload: str, secret: str = STRIPE_TEST_SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_type: str, data_object: dict, event_id: str = "evt_test_1") -> str:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {"object": data_object},
        }
    )


@pytest.fixture(autouse=True)
def reset_event_store():
    get_event_store.cache_clear()
    caches["webhook-events"].clear()
    yield
    get_event_store.cache_clear()


@pytest.fixture
def stripe_secret(settings):
    settings.STRIPE_WEBHOOK_SECRET = STRIPE_TEST_SECRET
    return STRIPE_TEST_SECRET


@pytest.fixture
def tenant(db):
    return get_user_model().objects.create_user(
        username="tenant@example.com",
        email="tenant@example.com",
        password="password123",
    )


@pytest.fixture
def staff_user(db):
    return get_user_model().objects.create_user(
        username="staff@example.com",
        email="staff@example.com",
        password="password123",
        is_staff=True,
    )


@pytest.fixture
def make_viewing(tenant):
    def _make(user=None, status=ViewingRequest.PENDING, **extra):
        return ViewingRequest.objects.create(
            tenant=user or tenant,
            listing_reference="apt-42",
            status=status,
            proposed_datetime=(timezone.now() + timedelta(days=3)).replace(microsecond=0),
            **extra,
        )

    return _make


@pytest.fixture
def viewing(make_viewing):
    return make_viewing()


@pytest.fixture
def link_payment():
    def _link(viewing, provider="stripe", provider_id="cs_test_123", amount="50.00"):
        tx = ledger.create_transaction(provider, amount, "EUR", str(viewing.id))
        viewing.payment_required = True
        viewing.payment_transaction = tx
        viewing.save(update_fields=["payment_required", "payment_transaction"])
        if provider_id:
            tx = ledger.update_provider_details(tx.id, provider_id)
        return tx

    return _link


@pytest.fixture
def pending_payment(viewing, link_payment):
    return link_payment(viewing)


@pytest.fixture
def send_stripe_event(stripe_secret):
    def _send(event_type=None, data_object=None, event_id="evt_test_1", *, raw=None, signature=None):
        payload = raw if raw is not None else stripe_event(event_type, data_object, event_id)
        return APIClient().post(
            reverse("stripe-webhook"),
            data=payload,
            content_type="application/json",
            HTTP_STRIPE_SIGNATURE=signature or sign_stripe_payload(payload, stripe_secret),
        )

    return _send


@pytest.fixture
def send_paypal_event():
    def _send(event=None, *, raw=None):
        payload = raw if raw is not None else json.dumps(event)
        return APIClient().post(
            reverse("paypal-webhook"),
            data=payload,
            content_type="application/json",
        )

    return _send


@pytest.fixture
def sign_stripe(stripe_secret):
    def _sign(payload, timestamp=None):
        return sign_stripe_payload(payload, stripe_secret, timestamp)

    return _sign
