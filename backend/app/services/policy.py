from __future__ import annotations
from flask import abort
from sqlalchemy import select
from app.models.authz import UserRole, RolePermission, Permission, Role
from app import get_db


def compute_effective_permissions(user_id: int):
    session = get_db()
    role_ids = {r.role_id for r in session.execute(select(UserRole).where(UserRole.user_id==user_id)).scalars()}
    perm_codes = set()
    if role_ids:
        perm_ids = [rp.permission_id for rp in session.execute(select(RolePermission).where(RolePermission.role_id.in_(role_ids))).scalars()]
        if perm_ids:
            for p in session.execute(select(Permission).where(Permission.id.in_(perm_ids))).scalars():
                perm_codes.add(p.code)
    # Owner wildcard: every permission known to the database
    owner_role = session.execute(select(Role).where(Role.name=='Owner')).scalar_one_or_none()
    if owner_role and owner_role.id in role_ids:
        for p in session.execute(select(Permission)).scalars():
            perm_codes.add(p.code)
    return {
        'roles': sorted(role_ids),
        'perms': sorted(perm_codes),
    }


def count_owner_users(session=None) -> int:
    session = session or get_db()
    owner_role = session.execute(select(Role).where(Role.name=='Owner')).scalar_one_or_none()
    if not owner_role:
        return 0
    return len({ur.user_id for ur in session.execute(select(UserRole).where(UserRole.role_id==owner_role.id)).scalars()})


def assert_not_removing_last_owner(target_user_id: int, new_role_ids: set[int]):
    """Abort 400 if applying new_role_ids to target_user_id would leave no Owner at all."""
    session = get_db()
    owner_role = session.execute(select(Role).where(Role.name=='Owner')).scalar_one_or_none()
    if not owner_role or owner_role.id in new_role_ids:
        return
    had_owner = session.execute(select(UserRole).where(UserRole.user_id==target_user_id, UserRole.role_id==owner_role.id)).scalar_one_or_none() is not None
    if had_owner and count_owner_users(session) <= 1:
        abort(400, description='Cannot remove last Owner role')
