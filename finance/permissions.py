from __future__ import annotations

from typing import Dict, Tuple

from django.conf import settings
from rest_framework.exceptions import PermissionDenied

from .models import User

ACTIONS = ('create', 'approve', 'reject', 'delete_any', 'record_payment')

DEFAULT_APPROVAL_POLICY: Dict[str, Dict[str, Tuple[str, ...]]] = {
    'invoice': {
        'create': (User.Roles.FINANCE,),
        'approve': (User.Roles.OWNER,),
        'reject': (User.Roles.OWNER,),
        'delete_any': (User.Roles.OWNER,),
        'record_payment': (User.Roles.FINANCE, User.Roles.OWNER),
    },
    'expense': {
        'create': (User.Roles.SPV, User.Roles.FINANCE, User.Roles.OWNER),
        'approve': (User.Roles.FINANCE, User.Roles.OWNER),
        'reject': (User.Roles.FINANCE, User.Roles.OWNER),
        'delete_any': (User.Roles.OWNER,),
    },
    'budget_request': {
        'create': (User.Roles.SPV, User.Roles.FINANCE, User.Roles.OWNER),
        'approve': (User.Roles.FINANCE, User.Roles.OWNER),
        'reject': (User.Roles.FINANCE, User.Roles.OWNER),
        'delete_any': (User.Roles.OWNER,),
    },
}

DEFAULT_PLAN_EDITOR_ROLES = (User.Roles.FINANCE, User.Roles.OWNER)

ACTION_LABELS = {
    'create': 'create',
    'approve': 'approve',
    'reject': 'reject',
    'delete_any': 'delete',
    'record_payment': 'record payments on',
}


def get_approval_policy() -> Dict[str, Dict[str, Tuple[str, ...]]]:
    policy = getattr(settings, 'FINANCE_APPROVAL_POLICY', None) or {}
    merged = {}
    for document_type, defaults in DEFAULT_APPROVAL_POLICY.items():
        merged[document_type] = {**defaults, **policy.get(document_type, {})}
    return merged


def roles_for(document_type: str, action: str) -> Tuple[str, ...]:
    policy = get_approval_policy()
    if document_type not in policy:
        raise KeyError(f"Unknown document type {document_type!r}")
    return tuple(policy[document_type].get(action, ()))


def has_role(user: User | None, roles) -> bool:
    if not user or not getattr(user, 'is_authenticated', False):
        return False
    if user.is_superuser:
        return True
    has_any = getattr(user, 'has_any_role', None)
    if callable(has_any):
        return has_any(*roles)
    return getattr(user, 'role', None) in roles


def can_perform(user: User | None, document_type: str, action: str) -> bool:
    return has_role(user, roles_for(document_type, action))


def ensure_can_perform(user: User | None, document_type: str, action: str) -> None:
    if not can_perform(user, document_type, action):
        label = document_type.replace('_', ' ')
        raise PermissionDenied(f"Your role cannot {ACTION_LABELS.get(action, action)} this {label}.")


def can_edit_plan(user: User | None) -> bool:
    roles = getattr(settings, 'FINANCE_PLAN_EDITOR_ROLES', None) or DEFAULT_PLAN_EDITOR_ROLES
    return has_role(user, roles)


def can_view_all_documents(user: User | None) -> bool:
    return has_role(user, (User.Roles.FINANCE, User.Roles.OWNER))
