from rest_framework import serializers

from payments.models import PaymentTransaction


class PaymentTransactionSerializer(serializers.ModelSerializer):
    class Meta:
        model = PaymentTransaction
        fields = [
            "id",
            "provider",
            "amount",
            "currency",
            "reference",
            "provider_transaction_id",
            "status",
            "failure_reason",
            "completed_at",
            "created_at",
        ]
        read_only_fields = fields
