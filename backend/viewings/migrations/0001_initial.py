from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


VIEWING_STATUSES = [
    ("PENDING", "Pending"),
    ("CONFIRMED", "Confirmed"),
    ("DECLINED", "Declined"),
    ("COMPLETED", "Completed"),
    ("CANCELLED", "Cancelled"),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ("payments", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="ViewingRequest",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                ("listing_reference", models.CharField(blank=True, max_length=100)),
                (
                    "status",
                    models.CharField(choices=VIEWING_STATUSES, default="PENDING", max_length=12),
                ),
                ("proposed_datetime", models.DateTimeField()),
                ("confirmed_datetime", models.DateTimeField(blank=True, null=True)),
                ("responded_at", models.DateTimeField(blank=True, null=True)),
                ("decline_reason", models.CharField(blank=True, max_length=500)),
                ("payment_required", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "payment_transaction",
                    models.OneToOneField(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="viewing_request",
                        to="payments.paymenttransaction",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="viewing_requests",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at", "-id"],
            },
        ),
        migrations.CreateModel(
            name="ViewingRequestTransition",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                ("from_status", models.CharField(choices=VIEWING_STATUSES, max_length=12)),
                ("to_status", models.CharField(choices=VIEWING_STATUSES, max_length=12)),
                ("reason", models.CharField(blank=True, max_length=500)),
                ("changed_at", models.DateTimeField(auto_now_add=True)),
                (
                    "changed_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="viewing_transitions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "viewing_request",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transitions",
                        to="viewings.viewingrequest",
                    ),
                ),
            ],
            options={
                "ordering": ["changed_at", "id"],
            },
        ),
    ]
