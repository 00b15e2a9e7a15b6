from __future__ import annotations

from typing import Optional

from django.contrib.auth import get_user_model

from finance.models import ActivityLog

User = get_user_model()


def log_activity(
    *,
    actor: Optional[User],
    action: str,
    entity_type: str,
    entity_id: Optional[int],
    message: str,
) -> ActivityLog:
    if actor is not None and not getattr(actor, 'is_authenticated', False):
        actor = None
    return ActivityLog.objects.create(
        actor=actor,
        action=(action or '')[:64],
        entity_type=(entity_type or '')[:32],
        entity_id=entity_id,
        message=(message or '')[:500],
    )
