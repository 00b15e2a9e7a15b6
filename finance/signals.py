from django.dispatch import receiver

from .activity import log_activity
from .events import document_event

EVENT_MESSAGES = {
    'created': 'Created {label}.',
    'updated': 'Updated {label}.',
    'approved': 'Approved {label}.',
    'rejected': 'Rejected {label}.',
    'deleted': 'Deleted {label}.',
    'payment_recorded': 'Recorded payment of {amount} on {label}.',
    'payment_deleted': 'Deleted payment of {amount} on {label}.',
    'plan_updated': 'Updated the plan of {label}.',
}


@receiver(document_event)
def record_activity(sender, event, entity_type, entity_id, label, actor=None, payload=None, **kwargs):
    """Keep an audit row for every document event."""
    verb = event.split('.', 1)[-1]
    template = EVENT_MESSAGES.get(verb, '{event} on {label}.')
    message = template.format(label=label, event=event, **(payload or {}))
    log_activity(
        actor=actor,
        action=event,
        entity_type=entity_type,
        entity_id=entity_id,
        message=message,
    )
