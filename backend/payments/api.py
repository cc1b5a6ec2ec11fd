import logging

from django.conf import settings
from rest_framework import generics, permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from .exceptions import InvalidPayload, InvalidSignature, InvalidStateTransition
from .models import PaymentTransaction
from .serializers import PaymentTransactionSerializer
from .services.webhooks import handle_paypal_webhook, handle_stripe_webhook

logger = logging.getLogger(__name__)


def _webhook_response(provider: str, handler, *args) -> Response:
    try:
        result = handler(*args)
    except (InvalidSignature, InvalidPayload) as exc:
        logger.warning("Rejected %s webhook: %s", provider, exc)
        return Response(
            {"received": False, "error": str(exc)},
            status=status.HTTP_400_BAD_REQUEST,
        )
    except InvalidStateTransition as exc:
        logger.error("%s webhook could not be applied: %s", provider, exc)
        return Response(
            {"received": False, "error": str(exc)},
            status=status.HTTP_409_CONFLICT,
        )

    logger.info("%s webhook handled: %s %s", provider, result.event_type, result.status)
    return Response({"received": True})


class StripeWebhookView(APIView):
    """Receive Stripe payment events."""

    permission_classes: list = []
    authentication_classes: list = []

    def post(self, request, *args, **kwargs):
        if not settings.STRIPE_WEBHOOK_SECRET:
            logger.error("Stripe webhook secret not configured.")
            return Response(
                {"received": False, "error": "Stripe webhook secret not configured."},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        return _webhook_response(
            "Stripe",
            handle_stripe_webhook,
            request.body,
            request.META.get("HTTP_STRIPE_SIGNATURE"),
        )


class PayPalWebhookView(APIView):
    """Receive PayPal payment events."""

    permission_classes: list = []
    authentication_classes: list = []

    def post(self, request, *args, **kwargs):
        return _webhook_response("PayPal", handle_paypal_webhook, request.body)


class PaymentTransactionListView(generics.ListAPIView):
    serializer_class = PaymentTransactionSerializer
    permission_classes = [permissions.IsAdminUser]
    queryset = PaymentTransaction.objects.all()
    filterset_fields = ["status", "provider", "reference"]
    ordering_fields = ["created_at", "amount"]
