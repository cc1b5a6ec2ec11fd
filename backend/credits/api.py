from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from .serializers import CreditSummarySerializer
from .services import get_credit_summary, has_active_credit


class CreditSummaryView(APIView):
    """Active pack, remaining and used credits, and pack history for the caller."""

    permission_classes = [IsAuthenticated]

    def get(self, request, *args, **kwargs):
        summary = get_credit_summary(request.user)
        return Response(CreditSummarySerializer(summary).data)


class HasActiveCreditView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, *args, **kwargs):
        return Response({"has_credit": has_active_credit(request.user)})
