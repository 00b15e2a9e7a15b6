from __future__ import annotations

import logging
from typing import Optional

from django.db.models import F
from rest_framework.exceptions import NotFound

from .models import Project

logger = logging.getLogger(__name__)

# Project counter moved by approving each document type. Invoices bill the
# client and never touch the project budget.
BUDGET_FIELDS = {
    'expense': 'spent_amount',
    'budget_request': 'total_budget',
}


def budget_field_for(document_type: str) -> Optional[str]:
    return BUDGET_FIELDS.get(document_type)


def apply_budget_effect(document) -> Optional[str]:
    """Add an approved document's amount to its project's counter.

    Must run inside the transaction that flips the document to APPROVED; the
    increment is a single UPDATE so concurrent approvals of different
    documents on the same project never lose each other's writes.
    """
    field = budget_field_for(document.document_type)
    if not field:
        return None
    updated = Project.objects.filter(pk=document.project_id).update(**{field: F(field) + document.amount})
    if updated != 1:
        raise NotFound('Project not found.')
    logger.info(
        "Project %s %s increased by %s from %s %s",
        document.project_id,
        field,
        document.amount,
        document.document_type,
        document.pk,
    )
    return field
