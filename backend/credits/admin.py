from django.contrib import admin

from .models import ViewingCreditPack, ViewingCreditUsage


class ViewingCreditUsageInline(admin.TabularInline):
    model = ViewingCreditUsage
    extra = 0
    readonly_fields = ("viewing_request", "used_at")


@admin.register(ViewingCreditPack)
class ViewingCreditPackAdmin(admin.ModelAdmin):
    list_display = ("user", "total_credits", "used_credits", "created_at", "expires_at")
    search_fields = ("user__username", "user__email")
    readonly_fields = ("purchase_viewing_request", "created_at")
    inlines = [ViewingCreditUsageInline]
