from django.conf import settings
from django.db import models
from django.db.models import F, Q
from django.utils import timezone


class ViewingCreditPack(models.Model):
    """
    "Pay once, next viewings free" entitlement.

    A paid viewing opens a pack and immediately consumes its first credit;
    later paid viewings consume the remaining credits until the pack runs out
    or expires.
    """

    CREDITS_PER_PACK = 3

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="viewing_credit_packs",
    )
    total_credits = models.PositiveIntegerField(default=CREDITS_PER_PACK)
    used_credits = models.PositiveIntegerField(default=0)
    purchase_viewing_request = models.OneToOneField(
        "viewings.ViewingRequest",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="purchased_credit_pack",
    )
    created_at = models.DateTimeField(default=timezone.now)
    expires_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        constraints = [
            models.CheckConstraint(
                condition=Q(used_credits__lte=F("total_credits")),
                name="credit_pack_used_within_total",
            ),
        ]

    def __str__(self):
        return f"Credit pack #{self.pk} for {self.user} ({self.credits_remaining}/{self.total_credits})"

    @property
    def credits_remaining(self) -> int:
        return self.total_credits - self.used_credits

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and self.expires_at <= timezone.now()

    @property
    def is_usable(self) -> bool:
        return self.credits_remaining > 0 and not self.is_expired

    def use_credit(self):
        if not self.is_usable:
            raise ValueError("Credit pack has no usable credits.")
        self.used_credits += 1
        self.save(update_fields=["used_credits"])


class ViewingCreditUsage(models.Model):
    """One row per viewing request that consumed a credit."""

    pack = models.ForeignKey("ViewingCreditPack", on_delete=models.CASCADE, related_name="usages")
    viewing_request = models.OneToOneField(
        "viewings.ViewingRequest",
        on_delete=models.CASCADE,
        related_name="credit_usage",
    )
    used_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["used_at", "id"]

    def __str__(self):
        return f"Viewing request {self.viewing_request_id} used pack {self.pack_id}"
