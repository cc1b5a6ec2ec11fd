from django.conf import settings
from django.db import models


class ViewingRequest(models.Model):
    """A tenant's request to view an apartment; payment may gate confirmation."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    DECLINED = "DECLINED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    STATUSES = [
        (PENDING, "Pending"),
        (CONFIRMED, "Confirmed"),
        (DECLINED, "Declined"),
        (COMPLETED, "Completed"),
        (CANCELLED, "Cancelled"),
    ]

    TRANSITIONS = {
        PENDING: {CONFIRMED, DECLINED, CANCELLED},
        CONFIRMED: {COMPLETED, CANCELLED},
        DECLINED: set(),
        COMPLETED: set(),
        CANCELLED: set(),
    }

    tenant = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="viewing_requests",
    )
    listing_reference = models.CharField(max_length=100, blank=True)
    status = models.CharField(max_length=12, choices=STATUSES, default=PENDING)
    proposed_datetime = models.DateTimeField()
    confirmed_datetime = models.DateTimeField(null=True, blank=True)
    responded_at = models.DateTimeField(null=True, blank=True)
    decline_reason = models.CharField(max_length=500, blank=True)
    payment_required = models.BooleanField(default=False)
    payment_transaction = models.OneToOneField(
        "payments.PaymentTransaction",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="viewing_request",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at", "-id"]

    def __str__(self):
        return f"Viewing request #{self.pk} ({self.status})"

    def can_transition_to(self, target: str) -> bool:
        return target in self.TRANSITIONS.get(self.status, set())

    @property
    def is_payment_in_progress(self) -> bool:
        tx = self.payment_transaction
        return tx is not None and tx.is_in_progress


class ViewingRequestTransition(models.Model):
    """Append-only audit row for every viewing status change."""

    SYSTEM_ACTOR = "system"

    viewing_request = models.ForeignKey(
        "ViewingRequest",
        on_delete=models.PROTECT,
        related_name="transitions",
    )
    from_status = models.CharField(max_length=12, choices=ViewingRequest.STATUSES)
    to_status = models.CharField(max_length=12, choices=ViewingRequest.STATUSES)
    changed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="viewing_transitions",
    )
    reason = models.CharField(max_length=500, blank=True)
    changed_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["changed_at", "id"]

    def __str__(self):
        return f"{self.viewing_request_id}: {self.from_status} -> {self.to_status} by {self.actor}"

    @property
    def actor(self) -> str:
        if self.changed_by_id is None:
            return self.SYSTEM_ACTOR
        return self.changed_by.get_username()

    def save(self, *args, **kwargs):
        if self.pk is not None:
            raise ValueError("Viewing request transitions are immutable.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Viewing request transitions cannot be deleted.")
