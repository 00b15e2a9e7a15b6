"""Create and edit approval documents and project plans.

Every write here runs in one transaction: the document row, its item tree and
its stored totals land together, and the domain event goes out on commit.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from rest_framework.exceptions import PermissionDenied, ValidationError

from .approvals import ensure_pending_originator
from .calculations import apply_totals, check_dp_applicable, clean_percentage, compute_totals
from .events import emit
from .exceptions import StateConflict
from .items import build_item_tree, items_to_submission, leaf_subtotal, replace_items
from .models import ApprovalStatus, BudgetRequest, Expense, Invoice, InvoiceItem, Project, ProjectPlanItem
from .permissions import can_edit_plan, ensure_can_perform

logger = logging.getLogger(__name__)

INVOICE_FIELDS = (
    'invoice_number',
    'invoice_type',
    'recipient_name',
    'recipient_address',
    'attention',
    'po_number',
    'invoice_date',
    'due_date',
    'notes',
    'ppn_percentage',
    'pph_percentage',
    'dp_percentage',
)
EXPENSE_FIELDS = ('description', 'amount', 'category', 'receipt_url')
BUDGET_REQUEST_FIELDS = ('amount', 'reason', 'proof_url')


def full_clean_or_400(instance, exclude: Optional[Iterable[str]] = None) -> None:
    try:
        instance.full_clean(exclude=exclude)
    except DjangoValidationError as exc:
        detail = exc.message_dict if hasattr(exc, 'error_dict') else exc.messages
        raise ValidationError(detail) from exc


def _pick(fields: dict, allowed: Iterable[str]) -> dict:
    unknown = set(fields) - set(allowed)
    if unknown:
        raise ValidationError({name: 'This field cannot be set here.' for name in sorted(unknown)})
    return dict(fields)


def _invoice_nodes(project: Project, labels, items, use_project_plan: bool) -> list:
    if use_project_plan and not labels and not items:
        submission = items_to_submission(project.plan_items.all())
        labels, items = submission['labels'], submission['items']
    return build_item_tree(labels, items)


def _price_invoice(invoice: Invoice, subtotal: int) -> None:
    invoice.ppn_percentage = clean_percentage(invoice.ppn_percentage, 'ppn_percentage')
    invoice.pph_percentage = clean_percentage(invoice.pph_percentage, 'pph_percentage')
    invoice.dp_percentage = clean_percentage(invoice.dp_percentage, 'dp_percentage', required=False)
    check_dp_applicable(invoice.invoice_type, invoice.dp_percentage)
    totals = compute_totals(
        subtotal,
        ppn_percentage=invoice.ppn_percentage,
        pph_percentage=invoice.pph_percentage,
        dp_percentage=invoice.dp_percentage,
    )
    apply_totals(invoice, totals)


def create_invoice(
    project: Project,
    *,
    actor,
    labels=None,
    items=None,
    use_project_plan: bool = False,
    **fields,
) -> Invoice:
    ensure_can_perform(actor, 'invoice', 'create')
    fields = _pick(fields, INVOICE_FIELDS)
    with transaction.atomic():
        # Numbering reads the highest sequence in the project; hold the project
        # row so two creations cannot pick the same number.
        project = Project.objects.select_for_update().get(pk=project.pk)
        nodes = _invoice_nodes(project, labels, items, use_project_plan)
        invoice = Invoice(project=project, created_by=actor, **fields)
        _price_invoice(invoice, leaf_subtotal(nodes))
        full_clean_or_400(invoice)
        invoice.save()
        replace_items(invoice, nodes, InvoiceItem)
        emit('invoice.created', invoice, actor=actor)
    logger.info("Created invoice %s for project %s (amount %s)", invoice.invoice_number, project.pk, invoice.amount)
    return invoice


def update_invoice(invoice: Invoice, *, actor, labels=None, items=None, **fields) -> Invoice:
    """Edit a PENDING invoice; a new item tree replaces the stored one wholesale."""
    fields = _pick(fields, INVOICE_FIELDS)
    with transaction.atomic():
        locked = Invoice.objects.select_for_update().get(pk=invoice.pk)
        ensure_pending_originator(locked, actor=actor, verb='update')
        for name, value in fields.items():
            setattr(locked, name, value)
        if labels is None and items is None:
            nodes = None
            subtotal = leaf_subtotal(locked.items.all())
        else:
            nodes = build_item_tree(labels, items)
            subtotal = leaf_subtotal(nodes)
        _price_invoice(locked, subtotal)
        full_clean_or_400(locked)
        locked.save()
        if nodes is not None:
            replace_items(locked, nodes, InvoiceItem)
        emit('invoice.updated', locked, actor=actor)
    logger.info("Updated invoice %s (amount %s)", locked.invoice_number, locked.amount)
    return locked


def submit_expense(project: Project, *, actor, **fields) -> Expense:
    ensure_can_perform(actor, 'expense', 'create')
    fields = _pick(fields, EXPENSE_FIELDS)
    with transaction.atomic():
        expense = Expense(project=project, created_by=actor, **fields)
        full_clean_or_400(expense)
        expense.save()
        emit('expense.created', expense, actor=actor)
    logger.info("Expense %s of %s submitted for project %s", expense.pk, expense.amount, project.pk)
    return expense


def submit_budget_request(project: Project, *, actor, **fields) -> BudgetRequest:
    ensure_can_perform(actor, 'budget_request', 'create')
    fields = _pick(fields, BUDGET_REQUEST_FIELDS)
    with transaction.atomic():
        budget_request = BudgetRequest(project=project, created_by=actor, **fields)
        full_clean_or_400(budget_request)
        budget_request.save()
        emit('budget_request.created', budget_request, actor=actor)
    logger.info(
        "Budget request %s of %s submitted for project %s", budget_request.pk, budget_request.amount, project.pk
    )
    return budget_request


def update_document(document, *, actor, **fields):
    """Edit the free fields of a PENDING expense or budget request."""
    allowed = EXPENSE_FIELDS if document.document_type == 'expense' else BUDGET_REQUEST_FIELDS
    fields = _pick(fields, allowed)
    model = type(document)
    with transaction.atomic():
        locked = model.objects.select_for_update().get(pk=document.pk)
        ensure_pending_originator(locked, actor=actor, verb='update')
        for name, value in fields.items():
            setattr(locked, name, value)
        full_clean_or_400(locked)
        locked.save()
        emit(f"{locked.document_type}.updated", locked, actor=actor)
    logger.info("Updated %s %s", locked.document_type, locked.pk)
    return locked


def replace_plan(project: Project, *, actor, labels=None, items=None) -> list:
    """Swap a project's plan tree; an empty submission clears the plan."""
    if not can_edit_plan(actor):
        raise PermissionDenied('Your role cannot edit project plans.')
    nodes = build_item_tree(labels, items) if (labels or items) else []
    with transaction.atomic():
        created = replace_items(project, nodes, ProjectPlanItem)
        emit('project.plan_updated', project, actor=actor)
    return created


def has_decided_documents(project: Project) -> bool:
    return any(
        model.objects.filter(project=project).exclude(status=ApprovalStatus.PENDING).exists()
        for model in (Invoice, Expense, BudgetRequest)
    )


def delete_project(project: Project, *, actor) -> None:
    """Remove a project together with its pending documents and plan.

    A project that holds any approved or rejected document is history and
    stays.
    """
    with transaction.atomic():
        locked = Project.objects.select_for_update().get(pk=project.pk)
        if has_decided_documents(locked):
            raise StateConflict('Projects with approved or rejected documents cannot be deleted.')
        emit('project.deleted', locked, actor=actor)
        locked.delete()
    logger.info("Deleted project %s", project.pk)
