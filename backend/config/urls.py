from django.contrib import admin
from django.urls import path
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView

from credits.api import CreditSummaryView, HasActiveCreditView
from payments.api import PayPalWebhookView, PaymentTransactionListView, StripeWebhookView
from viewings.api import (
    PaymentRequirementView,
    PaymentSessionView,
    PaymentStatusView,
)

urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/auth/token/", TokenObtainPairView.as_view(), name="auth-token"),
    path("api/auth/refresh/", TokenRefreshView.as_view(), name="auth-refresh"),
    path(
        "api/payments/transactions/",
        PaymentTransactionListView.as_view(),
        name="payment-transactions",
    ),
    path("api/payments/stripe/webhook/", StripeWebhookView.as_view(), name="stripe-webhook"),
    path("api/payments/paypal/webhook/", PayPalWebhookView.as_view(), name="paypal-webhook"),
    path(
        "api/viewings/<int:viewing_id>/payment-requirement/",
        PaymentRequirementView.as_view(),
        name="viewing-payment-requirement",
    ),
    path(
        "api/viewings/<int:viewing_id>/payment-session/",
        PaymentSessionView.as_view(),
        name="viewing-payment-session",
    ),
    path(
        "api/viewings/<int:viewing_id>/payment-status/",
        PaymentStatusView.as_view(),
        name="viewing-payment-status",
    ),
    path("api/viewing-credits/me/", CreditSummaryView.as_view(), name="viewing-credits-me"),
    path(
        "api/viewing-credits/me/has-credit/",
        HasActiveCreditView.as_view(),
        name="viewing-credits-has-credit",
    ),
]
