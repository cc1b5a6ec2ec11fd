from django.contrib import admin

from .models import ViewingRequest, ViewingRequestTransition


class ViewingRequestTransitionInline(admin.TabularInline):
    model = ViewingRequestTransition
    extra = 0
    can_delete = False
    readonly_fields = ("from_status", "to_status", "changed_by", "reason", "changed_at")

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(ViewingRequest)
class ViewingRequestAdmin(admin.ModelAdmin):
    list_display = ("id", "tenant", "status", "proposed_datetime", "payment_required", "payment_transaction")
    list_filter = ("status", "payment_required")
    search_fields = ("tenant__username", "tenant__email", "listing_reference")
    readonly_fields = ("payment_transaction", "created_at", "updated_at")
    inlines = [ViewingRequestTransitionInline]
