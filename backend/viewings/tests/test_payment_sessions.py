from types import SimpleNamespace

import pytest
import requests
import stripe
from django.contrib.auth import get_user_model
from django.urls import reverse
from rest_framework.test import APIClient

from payments.exceptions import ProviderError
from payments.models import PaymentTransaction
from payments.services import ledger
from payments.services.providers import CheckoutSession, StripeProvider
from viewings.models import ViewingRequest
from viewings.services.payments import SUPERSEDED_REASON


@pytest.fixture
def staff_client(staff_user):
    client = APIClient()
    client.force_authenticate(staff_user)
    return client


@pytest.fixture
def tenant_client(tenant):
    client = APIClient()
    client.force_authenticate(tenant)
    return client


@pytest.fixture
def other_user(db):
    return get_user_model().objects.create_user(
        username="other@example.com",
        email="other@example.com",
        password="password123",
    )


@pytest.fixture
def payable_viewing(viewing, staff_client):
    response = staff_client.post(
        reverse("viewing-payment-requirement", args=[viewing.id]),
        {"amount": "50.00", "currency": "EUR", "provider": "stripe"},
        format="json",
    )
    assert response.status_code == 201
    viewing.refresh_from_db()
    return viewing


def session_url(viewing):
    return reverse("viewing-payment-session", args=[viewing.id])


@pytest.mark.django_db
def test_staff_marks_viewing_payment_required(payable_viewing):
    tx = payable_viewing.payment_transaction

    assert payable_viewing.payment_required is True
    assert tx.status == PaymentTransaction.CREATED
    assert tx.provider == PaymentTransaction.STRIPE
    assert tx.reference == str(payable_viewing.id)


@pytest.mark.django_db
def test_tenant_cannot_mark_payment_required(viewing, tenant_client):
    response = tenant_client.post(
        reverse("viewing-payment-requirement", args=[viewing.id]),
        {"amount": "50.00", "currency": "EUR", "provider": "stripe"},
        format="json",
    )

    assert response.status_code == 403


@pytest.mark.django_db
def test_payment_requirement_validates_amount_and_provider(viewing, staff_client):
    url = reverse("viewing-payment-requirement", args=[viewing.id])

    assert staff_client.post(url, {"amount": "0", "currency": "EUR", "provider": "stripe"}, format="json").status_code == 400
    assert staff_client.post(url, {"amount": "10.00", "currency": "EUR", "provider": "klarna"}, format="json").status_code == 400
    assert not PaymentTransaction.objects.exists()


@pytest.mark.django_db
def test_tenant_creates_stub_session(payable_viewing, tenant_client):
    response = tenant_client.post(session_url(payable_viewing), {}, format="json")

    assert response.status_code == 201
    assert response.data["status"] == PaymentTransaction.PENDING
    assert response.data["provider"] == "stripe"
    assert response.data["provider_transaction_id"].startswith("cs_test_")
    assert "/payments/preview?" in response.data["redirect_url"]

    tx = PaymentTransaction.objects.get(pk=response.data["transaction_id"])
    assert tx.provider_transaction_id == response.data["provider_transaction_id"]
    assert tx.viewing_request == payable_viewing


@pytest.mark.django_db
def test_provider_name_is_case_insensitive(payable_viewing, tenant_client):
    response = tenant_client.post(session_url(payable_viewing), {"provider": "PayPal"}, format="json")

    assert response.status_code == 201
    assert response.data["provider"] == "paypal"
    assert response.data["provider_transaction_id"].startswith("PAYPAL-TEST-")
    payable_viewing.refresh_from_db()
    assert payable_viewing.payment_transaction.provider == "paypal"
    assert PaymentTransaction.objects.filter(status=PaymentTransaction.FAILED).count() == 1


@pytest.mark.django_db
def test_unknown_provider_is_rejected_before_any_change(payable_viewing, tenant_client):
    original = payable_viewing.payment_transaction

    response = tenant_client.post(session_url(payable_viewing), {"provider": "bitcoin"}, format="json")

    assert response.status_code == 400
    original.refresh_from_db()
    assert original.status == PaymentTransaction.CREATED
    assert PaymentTransaction.objects.count() == 1


@pytest.mark.django_db
def test_other_users_cannot_start_sessions(payable_viewing, other_user):
    client = APIClient()
    client.force_authenticate(other_user)

    response = client.post(session_url(payable_viewing), {}, format="json")

    assert response.status_code == 403


@pytest.mark.django_db
def test_session_requires_payment_flag(viewing, tenant_client):
    response = tenant_client.post(session_url(viewing), {}, format="json")

    assert response.status_code == 409
    assert not PaymentTransaction.objects.exists()


@pytest.mark.django_db
def test_session_requires_pending_viewing(payable_viewing, tenant_client):
    ViewingRequest.objects.filter(pk=payable_viewing.pk).update(status=ViewingRequest.DECLINED)

    response = tenant_client.post(session_url(payable_viewing), {}, format="json")

    assert response.status_code == 409


@pytest.mark.django_db
def test_provider_failure_leaves_transaction_retryable(payable_viewing, tenant_client, monkeypatch):
    def broken(self, transaction, viewing_request):
        raise ProviderError("Payment provider error: upstream timeout")

    monkeypatch.setattr(StripeProvider, "create_checkout_session", broken)

    response = tenant_client.post(session_url(payable_viewing), {}, format="json")

    assert response.status_code == 502
    tx = payable_viewing.payment_transaction
    tx.refresh_from_db()
    assert tx.status == PaymentTransaction.CREATED
    assert tx.provider_transaction_id is None

    monkeypatch.undo()
    retry = tenant_client.post(session_url(payable_viewing), {}, format="json")
    assert retry.status_code == 201
    assert retry.data["transaction_id"] == tx.id


@pytest.mark.django_db
def test_new_session_supersedes_pending_one(payable_viewing, tenant_client):
    first = tenant_client.post(session_url(payable_viewing), {}, format="json")
    second = tenant_client.post(session_url(payable_viewing), {}, format="json")

    assert second.status_code == 201
    assert second.data["transaction_id"] != first.data["transaction_id"]

    old = PaymentTransaction.objects.get(pk=first.data["transaction_id"])
    assert old.status == PaymentTransaction.FAILED
    assert old.failure_reason == SUPERSEDED_REASON
    payable_viewing.refresh_from_db()
    assert payable_viewing.payment_transaction_id == second.data["transaction_id"]
    assert payable_viewing.payment_transaction.amount == old.amount


@pytest.mark.django_db
def test_completed_payment_blocks_new_session(payable_viewing, tenant_client):
    PaymentTransaction.objects.filter(pk=payable_viewing.payment_transaction_id).update(
        status=PaymentTransaction.COMPLETED
    )

    response = tenant_client.post(session_url(payable_viewing), {}, format="json")

    assert response.status_code == 409


@pytest.mark.django_db
def test_payment_status_visibility(payable_viewing, tenant_client, staff_client, other_user):
    url = reverse("viewing-payment-status", args=[payable_viewing.id])

    response = tenant_client.get(url)
    assert response.status_code == 200
    assert response.data == {"viewing_request": payable_viewing.id, "payment_status": "CREATED"}

    assert staff_client.get(url).status_code == 200

    outsider = APIClient()
    outsider.force_authenticate(other_user)
    assert outsider.get(url).status_code == 403


@pytest.mark.django_db
def test_payment_status_without_transaction(viewing, tenant_client):
    response = tenant_client.get(reverse("viewing-payment-status", args=[viewing.id]))

    assert response.status_code == 200
    assert response.data["payment_status"] is None


@pytest.mark.django_db
def test_unknown_viewing_returns_not_found(tenant_client):
    response = tenant_client.get(reverse("viewing-payment-status", args=[9999]))

    assert response.status_code == 404


@pytest.mark.django_db
def test_clearing_requirement_retires_unpaid_transaction(payable_viewing, staff_client):
    tx = payable_viewing.payment_transaction

    response = staff_client.delete(reverse("viewing-payment-requirement", args=[payable_viewing.id]))

    assert response.status_code == 204
    payable_viewing.refresh_from_db()
    tx.refresh_from_db()
    assert payable_viewing.payment_required is False
    assert payable_viewing.payment_transaction is None
    assert tx.status == PaymentTransaction.FAILED


@pytest.mark.django_db
def test_cannot_clear_requirement_while_payment_pending(payable_viewing, tenant_client, staff_client):
    tenant_client.post(session_url(payable_viewing), {}, format="json")

    response = staff_client.delete(reverse("viewing-payment-requirement", args=[payable_viewing.id]))

    assert response.status_code == 409
    payable_viewing.refresh_from_db()
    assert payable_viewing.payment_required is True


@pytest.fixture
def live_stripe_sessions(settings, monkeypatch):
    settings.PAYMENTS_USE_STUB = False
    settings.STRIPE_SECRET_KEY = "sk_test_live_mode"
    monkeypatch.setattr(stripe, "api_key", None)
    state = {"created": [], "expired": [], "status": "open"}

    def fake_create(**params):
        session_id = f"cs_live_{len(state['created']) + 1}"
        state["created"].append(session_id)
        return SimpleNamespace(id=session_id, url=f"https://checkout.stripe.test/{session_id}")

    def fake_retrieve(session_id, **params):
        return SimpleNamespace(id=session_id, status=state["status"])

    def fake_expire(session_id, **params):
        state["expired"].append(session_id)
        return SimpleNamespace(id=session_id, status="expired")

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    monkeypatch.setattr(stripe.checkout.Session, "retrieve", fake_retrieve)
    monkeypatch.setattr(stripe.checkout.Session, "expire", fake_expire)
    return state


@pytest.mark.django_db
def test_open_session_is_expired_before_it_is_replaced(payable_viewing, tenant_client, live_stripe_sessions):
    first = tenant_client.post(session_url(payable_viewing), {}, format="json")
    second = tenant_client.post(session_url(payable_viewing), {}, format="json")

    assert second.status_code == 201
    assert live_stripe_sessions["expired"] == ["cs_live_1"]
    old = PaymentTransaction.objects.get(pk=first.data["transaction_id"])
    assert old.status == PaymentTransaction.FAILED
    assert second.data["provider_transaction_id"] == "cs_live_2"


@pytest.mark.django_db
def test_paid_session_in_another_tab_still_confirms_viewing(
    payable_viewing, tenant_client, live_stripe_sessions, send_stripe_event
):
    first = tenant_client.post(session_url(payable_viewing), {}, format="json")
    # The tenant pays in the tab that is already open.
    live_stripe_sessions["status"] = "complete"

    retry = tenant_client.post(session_url(payable_viewing), {}, format="json")

    assert retry.status_code == 409
    assert live_stripe_sessions["expired"] == []
    assert PaymentTransaction.objects.count() == 1

    for _ in range(2):
        webhook = send_stripe_event(
            "checkout.session.completed",
            {"object": "checkout.session", "id": "cs_live_1"},
            event_id="evt_paid_first_tab",
        )
        assert webhook.status_code == 200

    tx = PaymentTransaction.objects.get(pk=first.data["transaction_id"])
    payable_viewing.refresh_from_db()
    assert tx.status == PaymentTransaction.COMPLETED
    assert payable_viewing.status == ViewingRequest.CONFIRMED
    assert payable_viewing.payment_transaction_id == tx.id


@pytest.mark.django_db
def test_expiry_failure_keeps_session_pending(payable_viewing, tenant_client, live_stripe_sessions, monkeypatch):
    first = tenant_client.post(session_url(payable_viewing), {}, format="json")

    def broken_expire(session_id, **params):
        raise stripe.error.APIConnectionError("stripe unreachable")

    monkeypatch.setattr(stripe.checkout.Session, "expire", broken_expire)

    response = tenant_client.post(session_url(payable_viewing), {}, format="json")

    assert response.status_code == 409
    tx = PaymentTransaction.objects.get(pk=first.data["transaction_id"])
    assert tx.status == PaymentTransaction.PENDING
    assert tx.provider_transaction_id == "cs_live_1"


@pytest.mark.django_db
def test_live_paypal_order_blocks_replacement(payable_viewing, tenant_client, settings, monkeypatch, send_paypal_event):
    settings.PAYMENTS_USE_STUB = False
    settings.PAYPAL_CLIENT_ID = "client-id"
    settings.PAYPAL_CLIENT_SECRET = "client-secret"
    settings.PAYPAL_API_BASE = "https://paypal.test"

    def fake_post(url, **kwargs):
        if url.endswith("/v1/oauth2/token"):
            return SimpleNamespace(status_code=200, text="", json=lambda: {"access_token": "token-123"})
        return SimpleNamespace(
            status_code=201,
            text="",
            json=lambda: {"id": "ORDER-1", "links": [{"rel": "approve", "href": "https://paypal.test/approve/ORDER-1"}]},
        )

    monkeypatch.setattr(requests, "post", fake_post)

    first = tenant_client.post(session_url(payable_viewing), {"provider": "paypal"}, format="json")
    second = tenant_client.post(session_url(payable_viewing), {"provider": "stripe"}, format="json")

    assert first.status_code == 201
    assert second.status_code == 409

    webhook = send_paypal_event(
        {
            "id": "WH-CAPTURE-1",
            "event_type": "PAYMENT.CAPTURE.COMPLETED",
            "resource": {"id": "CAPTURE-1", "supplementary_data": {"related_ids": {"order_id": "ORDER-1"}}},
        }
    )

    assert webhook.status_code == 200
    tx = PaymentTransaction.objects.get(pk=first.data["transaction_id"])
    assert tx.status == PaymentTransaction.COMPLETED


@pytest.mark.django_db
def test_session_already_attached_elsewhere_is_a_conflict(payable_viewing, tenant_client, monkeypatch):
    tx = payable_viewing.payment_transaction

    def racing_session(self, transaction, viewing_request):
        # Another request attached its session to the same transaction first.
        ledger.update_provider_details(transaction.id, "cs_test_winner")
        return CheckoutSession(provider_transaction_id="cs_test_loser", redirect_url="https://example.test")

    monkeypatch.setattr(StripeProvider, "create_checkout_session", racing_session)

    response = tenant_client.post(session_url(payable_viewing), {}, format="json")

    assert response.status_code == 409
    tx.refresh_from_db()
    assert tx.status == PaymentTransaction.CREATED
    assert tx.provider_transaction_id is None
