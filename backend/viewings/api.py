import logging

from django.shortcuts import get_object_or_404
from rest_framework import permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from payments.exceptions import InvalidStateTransition, ProviderError, UnsupportedProvider

from .models import ViewingRequest
from .serializers import (
    PaymentRequirementSerializer,
    PaymentSessionRequestSerializer,
    PaymentSessionSerializer,
    ViewingRequestSerializer,
)
from .services.payments import (
    clear_payment_requirement,
    create_payment_session,
    get_payment_status,
    mark_payment_required,
)

logger = logging.getLogger(__name__)


class ViewingRequestBaseView(APIView):
    viewing: ViewingRequest | None = None

    def initial(self, request, *args, **kwargs):
        super().initial(request, *args, **kwargs)
        self.viewing = get_object_or_404(
            ViewingRequest.objects.select_related("payment_transaction"),
            pk=kwargs.get("viewing_id"),
        )


class PaymentRequirementView(ViewingRequestBaseView):
    """Staff toggle for whether a viewing request must be paid before confirmation."""

    permission_classes = [permissions.IsAdminUser]

    def post(self, request, viewing_id, *args, **kwargs):
        serializer = PaymentRequirementSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            viewing = mark_payment_required(self.viewing, **serializer.validated_data)
        except UnsupportedProvider as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)
        except ValueError as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_409_CONFLICT)
        return Response(ViewingRequestSerializer(viewing).data, status=status.HTTP_201_CREATED)

    def delete(self, request, viewing_id, *args, **kwargs):
        try:
            clear_payment_requirement(self.viewing)
        except ValueError as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_409_CONFLICT)
        return Response(status=status.HTTP_204_NO_CONTENT)


class PaymentSessionView(ViewingRequestBaseView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, viewing_id, *args, **kwargs):
        serializer = PaymentSessionRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            session = create_payment_session(
                self.viewing,
                request.user,
                provider=serializer.validated_data.get("provider") or None,
            )
        except PermissionError as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_403_FORBIDDEN)
        except UnsupportedProvider as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)
        except (ValueError, InvalidStateTransition) as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_409_CONFLICT)
        except ProviderError as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_502_BAD_GATEWAY)
        return Response(PaymentSessionSerializer(session).data, status=status.HTTP_201_CREATED)


class PaymentStatusView(ViewingRequestBaseView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request, viewing_id, *args, **kwargs):
        try:
            payment_status = get_payment_status(self.viewing, request.user)
        except PermissionError as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_403_FORBIDDEN)
        return Response({"viewing_request": self.viewing.id, "payment_status": payment_status})
