from django.db import models


class PaymentTransaction(models.Model):
    """One payment attempt with an external provider."""

    STRIPE = "stripe"
    PAYPAL = "paypal"
    PROVIDERS = [
        (STRIPE, "Stripe"),
        (PAYPAL, "PayPal"),
    ]

    CREATED = "CREATED"
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    STATUSES = [
        (CREATED, "Created"),
        (PENDING, "Pending"),
        (COMPLETED, "Completed"),
        (FAILED, "Failed"),
        (REFUNDED, "Refunded"),
    ]

    TRANSITIONS = {
        CREATED: {PENDING, FAILED},
        PENDING: {COMPLETED, FAILED},
        COMPLETED: {REFUNDED},
        FAILED: set(),
        REFUNDED: set(),
    }
    # Statuses a repeated provider notification may re-assert without effect.
    SETTLED_STATUSES = {COMPLETED, FAILED, REFUNDED}

    provider = models.CharField(max_length=20, choices=PROVIDERS)
    amount = models.DecimalField(max_digits=10, decimal_places=2)
    currency = models.CharField(max_length=3, default="EUR")
    reference = models.CharField(max_length=100, db_index=True)
    provider_transaction_id = models.CharField(max_length=255, unique=True, null=True, blank=True)
    status = models.CharField(max_length=12, choices=STATUSES, default=CREATED)
    failure_reason = models.CharField(max_length=500, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at", "-id"]

    def __str__(self):
        return f"{self.get_provider_display()} {self.amount} {self.currency} ({self.status})"

    def can_transition_to(self, target: str) -> bool:
        return target in self.TRANSITIONS.get(self.status, set())

    @property
    def is_in_progress(self) -> bool:
        return self.status in {self.CREATED, self.PENDING}
