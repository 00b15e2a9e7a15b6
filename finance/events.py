from __future__ import annotations

import logging

from django.db import transaction
from django.dispatch import Signal

logger = logging.getLogger(__name__)

# Sent with: event, entity_type, entity_id, label, actor, payload.
document_event = Signal()


def emit(event: str, instance, *, actor=None, **payload) -> None:
    """Publish a domain event once the current transaction commits."""
    entity_type = getattr(instance, 'document_type', '') or instance._meta.model_name
    entity_id = instance.pk
    label = str(instance)
    sender = type(instance)

    def _send():
        responses = document_event.send_robust(
            sender=sender,
            event=event,
            entity_type=entity_type,
            entity_id=entity_id,
            label=label,
            actor=actor,
            payload=payload,
        )
        for receiver, response in responses:
            if isinstance(response, Exception):
                logger.error("Subscriber %r failed on %s", receiver, event, exc_info=response)

    transaction.on_commit(_send)
