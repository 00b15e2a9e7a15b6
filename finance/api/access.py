from __future__ import annotations

from finance.models import User
from finance.permissions import can_view_all_documents


def visible_invoices_for_user(user: User | None, queryset):
    if can_view_all_documents(user):
        return queryset
    return queryset.none()


def visible_documents_for_user(user: User | None, queryset):
    """Expenses and budget requests: everything for FINANCE/OWNER, own submissions otherwise."""
    if can_view_all_documents(user):
        return queryset
    if not user or not user.is_authenticated:
        return queryset.none()
    return queryset.filter(created_by=user)
