from __future__ import annotations

import logging

from django.utils import timezone

from viewings.models import ViewingRequest, ViewingRequestTransition

logger = logging.getLogger(__name__)


def record_transition(
    viewing: ViewingRequest,
    to_status: str,
    *,
    changed_by=None,
    reason: str = "",
) -> ViewingRequestTransition:
    """
    Move a viewing request to ``to_status`` and append the audit row.

    The caller holds the row lock and has already checked any business
    pre-condition; this only enforces the status table. ``changed_by=None``
    records the system as the actor.
    """

    if not viewing.can_transition_to(to_status):
        raise ValueError(f"Cannot move viewing request from {viewing.status} to {to_status}.")

    from_status = viewing.status
    viewing.status = to_status
    update_fields = ["status", "updated_at"]
    if to_status == ViewingRequest.CONFIRMED:
        viewing.confirmed_datetime = viewing.confirmed_datetime or viewing.proposed_datetime
        viewing.responded_at = timezone.now()
        update_fields += ["confirmed_datetime", "responded_at"]
    viewing.save(update_fields=update_fields)

    transition = ViewingRequestTransition.objects.create(
        viewing_request=viewing,
        from_status=from_status,
        to_status=to_status,
        changed_by=changed_by,
        reason=reason,
    )
    logger.info(
        "Viewing request %s moved %s -> %s by %s",
        viewing.id,
        from_status,
        to_status,
        transition.actor,
    )
    return transition
