from django.contrib import admin

from .models import PaymentTransaction


@admin.register(PaymentTransaction)
class PaymentTransactionAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "provider",
        "amount",
        "currency",
        "reference",
        "status",
        "created_at",
    )
    list_filter = ("provider", "status")
    search_fields = ("reference", "provider_transaction_id")
    # Status only moves through the ledger.
    readonly_fields = (
        "provider_transaction_id",
        "status",
        "failure_reason",
        "completed_at",
        "created_at",
        "updated_at",
    )

    def has_delete_permission(self, request, obj=None):
        return False
