from rest_framework import serializers

from credits.models import ViewingCreditPack


class ViewingCreditPackSerializer(serializers.ModelSerializer):
    credits_remaining = serializers.IntegerField(read_only=True)
    is_usable = serializers.BooleanField(read_only=True)

    class Meta:
        model = ViewingCreditPack
        fields = [
            "id",
            "total_credits",
            "used_credits",
            "credits_remaining",
            "is_usable",
            "purchase_viewing_request",
            "created_at",
            "expires_at",
        ]


class CreditSummarySerializer(serializers.Serializer):
    active_pack = ViewingCreditPackSerializer(allow_null=True)
    total_credits_remaining = serializers.IntegerField()
    total_credits_used = serializers.IntegerField()
    history = ViewingCreditPackSerializer(many=True)
