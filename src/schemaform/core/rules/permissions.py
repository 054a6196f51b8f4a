"""
Field permission calculation for a role.
"""

from __future__ import annotations

from ..ir.schema import FieldPermission, RolePermission, Schema

WILDCARD = "*"

UNRESTRICTED = FieldPermission(editable=True, readable=True, hidden=False)


def calculate_field_permissions(schema: Schema, role: str | None = None) -> dict[str, FieldPermission]:
    """Editable / readable / hidden flags for every field under ``role``.

    No role, or a role without an entry, leaves every field readable and
    visible. A field listed in ``read_only`` is never editable, even when
    ``editable`` also names it. Computed fields are never editable.
    """
    role_permission = schema.role_permissions.get(role) if role else None

    permissions: dict[str, FieldPermission] = {}
    for field_id, field_def in schema.fields.items():
        if role_permission is None:
            permission = UNRESTRICTED
        else:
            permission = field_permission(field_id, role_permission)

        if field_def.is_computed and permission.editable:
            permission = permission.model_copy(update={"editable": False})
        permissions[field_id] = permission
    return permissions


def field_permission(field_id: str, role_permission: RolePermission) -> FieldPermission:
    """Apply one role's lists to one field."""
    listed_editable = field_id in role_permission.editable or WILDCARD in role_permission.editable
    listed_read_only = field_id in role_permission.read_only or WILDCARD in role_permission.read_only

    editable = listed_editable and field_id not in role_permission.read_only
    readable = editable or listed_read_only
    return FieldPermission(editable=editable, readable=readable, hidden=not readable)
