"""One-way PENDING -> APPROVED | REJECTED transitions for approval documents.

Role gates come from the approval policy, evidence rules from
``EVIDENCE_RULES``. The status flip is a compare-and-swap on ``status =
PENDING`` and runs in the same transaction as the budget propagation, so a
document is approved (and its budget effect applied) at most once.
"""

from __future__ import annotations

import logging

from django.conf import settings
from django.db import OperationalError, transaction
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from .budget import apply_budget_effect
from .events import emit
from .exceptions import RetryLater, StateConflict
from .models import ApprovalStatus
from .permissions import can_perform, ensure_can_perform

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    (ApprovalStatus.PENDING, ApprovalStatus.APPROVED),
    (ApprovalStatus.PENDING, ApprovalStatus.REJECTED),
}

EVIDENCE_RULES = {
    'invoice': {'approve_proof': False, 'reject_proof': False},
    'expense': {'approve_proof': True, 'reject_proof': True},
    'budget_request': {'approve_proof': True, 'reject_proof': True},
}

RETRYABLE_SQLSTATES = {'40001', '40P01'}


def check_transition(current: str, target: str) -> None:
    if (current, target) not in ALLOWED_TRANSITIONS:
        raise StateConflict(f"Document is already {current.lower()} and cannot be moved to {target.lower()}.")


def _reject_notes_min_length() -> int:
    return int(getattr(settings, 'FINANCE_REJECT_NOTES_MIN_LENGTH', 5))


def validate_evidence(document_type: str, target: str, *, proof: str, notes: str) -> None:
    rules = EVIDENCE_RULES[document_type]
    if target == ApprovalStatus.APPROVED:
        if rules['approve_proof'] and not proof:
            raise ValidationError({'proof_url': 'A proof reference is required to approve.'})
        return
    errors = {}
    min_length = _reject_notes_min_length()
    if len(notes) < min_length:
        errors['notes'] = f"Rejection notes must be at least {min_length} characters."
    if rules['reject_proof'] and not proof:
        errors['proof_url'] = 'A proof reference is required to reject.'
    if errors:
        raise ValidationError(errors)


def _is_retryable(exc: OperationalError) -> bool:
    cause = exc.__cause__
    sqlstate = getattr(cause, 'pgcode', None) or getattr(getattr(cause, 'diag', None), 'sqlstate', None)
    if sqlstate in RETRYABLE_SQLSTATES:
        return True
    return 'database is locked' in str(exc).lower()


def run_atomic(operation, *, attempts: int | None = None):
    """Run ``operation`` in a transaction, retrying serialization failures."""
    attempts = attempts or int(getattr(settings, 'FINANCE_TRANSITION_MAX_ATTEMPTS', 3))
    for attempt in range(1, attempts + 1):
        try:
            with transaction.atomic():
                return operation()
        except OperationalError as exc:
            if not _is_retryable(exc):
                raise
            logger.warning("Serialization failure (attempt %s/%s): %s", attempt, attempts, exc)
    raise RetryLater()


def transition(document, *, actor, target: str, proof: str = '', notes: str = ''):
    """Move ``document`` out of PENDING and apply its budget effect on approval."""
    document_type = document.document_type
    action = 'approve' if target == ApprovalStatus.APPROVED else 'reject'
    ensure_can_perform(actor, document_type, action)
    check_transition(document.status, target)
    proof = (proof or '').strip()
    notes = (notes or '').strip()
    validate_evidence(document_type, target, proof=proof, notes=notes)

    model = type(document)

    def _apply():
        now = timezone.now()
        updated = model.objects.filter(pk=document.pk, status=ApprovalStatus.PENDING).update(
            status=target,
            decision_notes=notes,
            decision_proof_url=proof,
            decided_by=actor,
            decided_at=now,
            updated_at=now,
        )
        if updated != 1:
            current = model.objects.filter(pk=document.pk).values_list('status', flat=True).first()
            if current is None:
                raise NotFound(f"{model._meta.verbose_name.capitalize()} not found.")
            check_transition(current, target)
        # Read under the row lock taken by the UPDATE; the budget moves by the stored amount.
        document.refresh_from_db()
        if target == ApprovalStatus.APPROVED:
            apply_budget_effect(document)
        emit(f"{document_type}.{target.lower()}", document, actor=actor)

    run_atomic(_apply)
    logger.info("%s %s %s by %s", document_type, document.pk, target.lower(), getattr(actor, 'pk', None))
    return document


def approve(document, *, actor, proof: str = '', notes: str = ''):
    return transition(document, actor=actor, target=ApprovalStatus.APPROVED, proof=proof, notes=notes)


def reject(document, *, actor, notes: str = '', proof: str = ''):
    return transition(document, actor=actor, target=ApprovalStatus.REJECTED, proof=proof, notes=notes)


def ensure_pending_originator(document, *, actor, verb: str) -> None:
    """Only the originator (or a role allowed to delete any document) may touch
    a document, and only while it is still PENDING."""
    is_originator = bool(actor and document.created_by_id and document.created_by_id == actor.pk)
    if not is_originator and not can_perform(actor, document.document_type, 'delete_any'):
        raise StateConflict(f"Only the originator can {verb} this document.")
    if not document.is_pending:
        raise StateConflict(f"Only pending documents can be {verb}d.")


def delete_document(document, *, actor) -> None:
    ensure_pending_originator(document, actor=actor, verb='delete')
    model = type(document)
    with transaction.atomic():
        emit(f"{document.document_type}.deleted", document, actor=actor)
        deleted, _ = model.objects.filter(pk=document.pk, status=ApprovalStatus.PENDING).delete()
        if not deleted:
            raise StateConflict('Only pending documents can be deleted.')
    logger.info("%s %s deleted by %s", document.document_type, document.pk, getattr(actor, 'pk', None))
