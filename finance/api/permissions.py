from __future__ import annotations

from typing import Iterable

from rest_framework.permissions import BasePermission

from finance.permissions import has_role


class RolePermission(BasePermission):
    allowed_roles: Iterable[str] | None = None

    def has_permission(self, request, view) -> bool:
        roles = getattr(view, 'allowed_roles', None) or self.allowed_roles
        user = getattr(request, 'user', None)
        if not user or not user.is_authenticated:
            return False
        if not roles:
            return True
        return has_role(user, roles)
