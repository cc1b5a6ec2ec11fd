from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import IntegrityError, transaction
from django.db.models import F, Q, QuerySet
from django.utils import timezone

from credits.models import ViewingCreditPack, ViewingCreditUsage

logger = logging.getLogger(__name__)


def active_packs(user_id: int) -> QuerySet[ViewingCreditPack]:
    """Usable packs for a user, newest first."""

    now = timezone.now()
    return ViewingCreditPack.objects.filter(
        user_id=user_id,
        used_credits__lt=F("total_credits"),
    ).filter(Q(expires_at__isnull=True) | Q(expires_at__gt=now))


def _pack_expiry():
    ttl_days = getattr(settings, "VIEWING_CREDIT_PACK_TTL_DAYS", 0)
    if ttl_days and ttl_days > 0:
        return timezone.now() + timedelta(days=ttl_days)
    return None


def pack_for_viewing(viewing_request) -> ViewingCreditPack | None:
    usage = (
        ViewingCreditUsage.objects.select_related("pack")
        .filter(viewing_request=viewing_request)
        .first()
    )
    if usage is not None:
        return usage.pack
    return ViewingCreditPack.objects.filter(purchase_viewing_request=viewing_request).first()


def _allocate(user_id: int, viewing_request) -> ViewingCreditPack:
    # Serializes allocations for one user.
    try:
        user = get_user_model().objects.select_for_update().get(pk=user_id)
    except get_user_model().DoesNotExist:
        raise ValueError("User not found") from None

    existing = pack_for_viewing(viewing_request)
    if existing is not None:
        logger.info(
            "Credit pack already allocated for viewingRequestId=%s, skipping", viewing_request.id
        )
        return existing

    pack = active_packs(user_id).select_for_update().first()
    if pack is not None:
        pack.use_credit()
        ViewingCreditUsage.objects.create(pack=pack, viewing_request=viewing_request)
        logger.info(
            "Used credit from pack=%s for userId=%s, remaining=%s",
            pack.id,
            user_id,
            pack.credits_remaining,
        )
        return pack

    # The paid viewing itself consumes the first credit.
    pack = ViewingCreditPack.objects.create(
        user=user,
        total_credits=ViewingCreditPack.CREDITS_PER_PACK,
        used_credits=1,
        purchase_viewing_request=viewing_request,
        expires_at=_pack_expiry(),
    )
    ViewingCreditUsage.objects.create(pack=pack, viewing_request=viewing_request)
    logger.info(
        "Created new credit pack=%s for userId=%s, remaining=%s",
        pack.id,
        user_id,
        pack.credits_remaining,
    )
    return pack


def on_payment_succeeded(user_id: int, viewing_request) -> ViewingCreditPack:
    """
    Allocate the credit earned by a completed viewing payment.

    Keyed by the viewing request: repeating the call for the same request
    returns the pack it already touched without consuming another credit.
    """

    try:
        with transaction.atomic():
            return _allocate(user_id, viewing_request)
    except IntegrityError:
        existing = pack_for_viewing(viewing_request)
        if existing is None:
            raise
        logger.info("Concurrent credit allocation for viewingRequestId=%s resolved", viewing_request.id)
        return existing


def has_active_credit(user) -> bool:
    return active_packs(user.pk).exists()


def get_credit_summary(user) -> Dict[str, Any]:
    history = list(ViewingCreditPack.objects.filter(user=user))
    usable = [pack for pack in history if pack.is_usable]
    return {
        "active_pack": usable[0] if usable else None,
        "total_credits_remaining": sum(pack.credits_remaining for pack in usable),
        "total_credits_used": sum(pack.used_credits for pack in history),
        "history": history,
    }
