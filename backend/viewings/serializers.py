from decimal import Decimal

from rest_framework import serializers

from payments.models import PaymentTransaction
from viewings.models import ViewingRequest, ViewingRequestTransition


class ViewingRequestTransitionSerializer(serializers.ModelSerializer):
    actor = serializers.CharField(read_only=True)

    class Meta:
        model = ViewingRequestTransition
        fields = ["from_status", "to_status", "actor", "reason", "changed_at"]


class ViewingRequestSerializer(serializers.ModelSerializer):
    payment_status = serializers.SerializerMethodField()
    transitions = ViewingRequestTransitionSerializer(many=True, read_only=True)

    class Meta:
        model = ViewingRequest
        fields = [
            "id",
            "tenant",
            "listing_reference",
            "status",
            "proposed_datetime",
            "confirmed_datetime",
            "payment_required",
            "payment_transaction",
            "payment_status",
            "transitions",
        ]
        read_only_fields = fields

    def get_payment_status(self, obj):
        tx = obj.payment_transaction
        return tx.status if tx is not None else None


class PaymentRequirementSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=Decimal("0.01"))
    currency = serializers.CharField(min_length=3, max_length=3)
    provider = serializers.ChoiceField(choices=[name for name, _ in PaymentTransaction.PROVIDERS])

    def to_internal_value(self, data):
        data = data.copy()
        if isinstance(data.get("provider"), str):
            data["provider"] = data["provider"].strip().lower()
        return super().to_internal_value(data)


class PaymentSessionRequestSerializer(serializers.Serializer):
    provider = serializers.CharField(required=False, allow_blank=True)


class PaymentSessionSerializer(serializers.Serializer):
    transaction_id = serializers.IntegerField(source="transaction.id")
    provider = serializers.CharField(source="transaction.provider")
    provider_transaction_id = serializers.CharField(source="transaction.provider_transaction_id")
    status = serializers.CharField(source="transaction.status")
    amount = serializers.DecimalField(source="transaction.amount", max_digits=10, decimal_places=2)
    currency = serializers.CharField(source="transaction.currency")
    redirect_url = serializers.CharField()
