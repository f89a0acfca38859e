#!/usr/bin/env python
"""Idempotent seed script for permissions, preset roles and the initial Owner.

Usage:
    python backend/scripts/seed_authz.py               # seed normally
    python backend/scripts/seed_authz.py --show-roles  # print role -> permission counts (after ensuring seed)
    python backend/scripts/seed_authz.py --dry-run     # run logic then rollback (no DB changes)

Every write of one run shares a single correlation id, so the audit trail
shows a seed run as one group (actor is empty: system-initiated).
"""
from __future__ import annotations
import os, sys, argparse, textwrap
from sqlalchemy import select, inspect

# Allow running from repo root
sys.path.append(os.path.abspath('backend'))

from app import create_app, get_db  # type: ignore
from app.audit.correlation import correlation
from app.models.authz import Base, Permission, Role, RolePermission, User, UserRole
from app.constants.permissions import SERVICE_ACTIONS, ROLE_PRESETS, build_all_permission_codes


def ensure_permissions(session):
    existing = {p.code for p in session.execute(select(Permission)).scalars().all()}
    created = 0
    for svc, actions in SERVICE_ACTIONS.items():
        for act in actions:
            code = f"{svc}.{act}"
            if code not in existing:
                session.add(Permission(code=code, service=svc, action=act, description_i18n={"en": code.replace('.', ' - ')}))
                created += 1
    session.flush()
    return created


def ensure_roles(session):
    existing_roles = {r.name: r for r in session.execute(select(Role)).scalars().all()}
    created = 0
    for role_name in ROLE_PRESETS:
        if role_name not in existing_roles:
            role = Role(name=role_name, is_system=True, description_i18n={"en": role_name})
            session.add(role)
            existing_roles[role_name] = role
            created += 1
    session.flush()

    all_codes = set(build_all_permission_codes())
    perms_map = {p.code: p for p in session.execute(select(Permission)).scalars()}
    for role_name, role in existing_roles.items():
        raw_codes = ROLE_PRESETS.get(role_name)
        if raw_codes is None:
            continue
        desired_codes = all_codes if '*' in raw_codes else {c for c in raw_codes if '.' in c}
        current_codes = {rp.permission.code for rp in role.permissions}
        for code in sorted(desired_codes - current_codes):
            if code not in perms_map:
                print(f"[WARN] Missing permission referenced by role {role_name}: {code}")
                continue
            session.add(RolePermission(role=role, permission=perms_map[code]))
    return created


def ensure_initial_admin(session):
    owner_role = session.execute(select(Role).where(Role.name=='Owner')).scalar_one_or_none()
    if not owner_role:
        print('[WARN] Owner role missing; skipping admin user creation')
        return False
    admin_email = os.getenv('SEED_ADMIN_EMAIL', 'admin@example.com')
    if session.execute(select(User).where(User.email==admin_email)).scalar_one_or_none():
        return False
    user = User(name='Owner', email=admin_email, password_hash='')
    user.set_password(os.getenv('SEED_ADMIN_PASSWORD', 'ChangeMe123!'))
    user.user_roles = [UserRole(role_id=owner_role.id)]
    session.add(user)
    session.flush()
    print(f"[INFO] Created initial admin user {admin_email} with temporary password.")
    return True


def summarize_roles(session):
    rows = []
    for role in session.execute(select(Role).order_by(Role.name)).scalars().all():
        perms = sorted(rp.permission.code for rp in role.permissions)
        rows.append((role.name, len(perms), perms[:8]))
    return rows


def print_role_summary(session):
    rows = summarize_roles(session)
    if not rows:
        print("[INFO] No roles present.")
        return
    name_w = max(len(r[0]) for r in rows)
    print(f"{'Role'.ljust(name_w)} | Count | Sample (up to 8)")
    print('-' * (name_w + 40))
    for name, cnt, sample in rows:
        print(f"{name.ljust(name_w)} | {str(cnt).rjust(5)} | {', '.join(sample)}")


def parse_args(argv=None):
    p = argparse.ArgumentParser(
        description="Seed RBAC permissions & roles",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""Examples:\n  seed normally: seed_authz.py\n  dry run: seed_authz.py --dry-run\n  show roles: seed_authz.py --show-roles\n""")
    )
    p.add_argument('--show-roles', action='store_true', help='Print role permission counts after seeding')
    p.add_argument('--dry-run', action='store_true', help='Rollback after operations (no commit)')
    return p.parse_args(argv)


def seed(session, dry_run: bool = False):
    """Run all seeding steps in one transaction; returns (permissions_created, roles_created, admin_created)."""
    with correlation.scope():
        try:
            created_p = ensure_permissions(session)
            created_r = ensure_roles(session)
            created_admin = ensure_initial_admin(session)
            if dry_run:
                session.rollback()
            else:
                session.commit()
        except Exception:
            session.rollback()
            raise
    return created_p, created_r, created_admin


def main(argv=None):
    args = parse_args(argv)
    app = create_app()
    with app.app_context():
        session = get_db()
        try:
            if not inspect(session.get_bind()).has_table('permissions'):
                # Bootstrap fallback when migrations have not run; prefer `alembic upgrade head`
                Base.metadata.create_all(session.get_bind())
            created_p, created_r, _ = seed(session, dry_run=args.dry_run)
            if args.dry_run:
                print(f"[DRY-RUN] (rolled back) Permissions would create: {created_p}, Roles would create: {created_r}")
            else:
                print(f"[DONE] Permissions created: {created_p}, Roles created: {created_r}")
            if args.show_roles:
                print('\nRole Permission Summary:')
                print_role_summary(session)
        finally:
            session.close()

if __name__ == '__main__':
    main()
