from flask import Blueprint, request, abort
from app.models.authz import User, Role, UserRole
from sqlalchemy import select
from app import get_db
from flask_jwt_extended import create_access_token, jwt_required, get_jwt_identity
from app.services.policy import compute_effective_permissions, assert_not_removing_last_owner
from app.utils.listing import apply_pagination, handle_conditional, make_cached_list_response
from app.decorators.auth import require_permissions

iam_bp = Blueprint('iam', __name__)


@iam_bp.post('/auth/login')
def login():
    data = request.json or {}
    email = data.get('email'); password = data.get('password')
    if not email or not password:
        abort(400, description='email & password required')
    session = get_db()
    user = session.execute(select(User).where(User.email==email)).scalar_one_or_none()
    if not user or not user.is_active or not user.verify_password(password):
        abort(401, description='invalid credentials')
    eff = compute_effective_permissions(user.id)
    claims = {
        'roles': eff['roles'],
        'perms': eff['perms'],
        'locale': user.locale
    }
    token = create_access_token(identity=str(user.id), additional_claims=claims)
    return {'access_token': token}


@iam_bp.get('/auth/me')
@jwt_required()
def me():
    # Identity stored as string, cast back to int for DB lookup
    user_id = int(get_jwt_identity())
    session = get_db()
    user = session.execute(select(User).where(User.id==user_id)).scalar_one_or_none()
    if not user:
        abort(404)
    eff = compute_effective_permissions(user.id)
    return {
        'id': user.id,
        'name': user.name,
        'email': user.email,
        'roles': eff['roles'],
        'perms': eff['perms'],
        'locale': user.locale,
    }


# --- Users ---

@iam_bp.get('/users')
@require_permissions('ADMIN.USER.MANAGE')
def list_users():
    session = get_db()
    q = session.query(User).order_by(User.id.asc())
    paged_q, total, limit, offset = apply_pagination(q)
    rows = paged_q.all()
    latest_ts = rows[0].updated_at if rows else None
    resp, etag = make_cached_list_response([_user_json(u) for u in rows], total, limit, offset, latest_ts)
    cond = handle_conditional(etag, latest_ts)
    if cond:
        return cond
    return resp


@iam_bp.post('/users')
@require_permissions('ADMIN.USER.MANAGE')
def create_user():
    data = request.json or {}
    name = data.get('name'); email = data.get('email'); password = data.get('password')
    if not all([name, email, password]):
        abort(400, description='name, email, password required')
    session = get_db()
    if session.execute(select(User).where(User.email==email)).scalar_one_or_none():
        abort(400, description='email in use')
    user = User(name=name, email=email, phone=data.get('phone'), password_hash='', locale=data.get('locale') or 'en')
    user.set_password(password)
    session.add(user)
    session.commit()
    return _user_json(user), 201


@iam_bp.put('/users/<int:user_id>')
@require_permissions('ADMIN.USER.MANAGE')
def update_user(user_id: int):
    session = get_db()
    user = session.execute(select(User).where(User.id==user_id)).scalar_one_or_none()
    if not user:
        abort(404)
    data = request.json or {}
    if 'name' in data:
        if not data['name']:
            abort(400, description='name cannot be empty')
        user.name = data['name']
    if 'phone' in data:
        user.phone = data['phone']
    if 'is_active' in data:
        user.is_active = bool(data['is_active'])
    if data.get('password'):
        user.set_password(data['password'])
    session.commit()
    return _user_json(user)


@iam_bp.put('/users/<int:user_id>/roles')
@require_permissions('ADMIN.USER.MANAGE')
def set_user_roles(user_id: int):
    session = get_db()
    user = session.execute(select(User).where(User.id==user_id)).scalar_one_or_none()
    if not user:
        abort(404)
    data = request.json or {}
    role_ids = set(data.get('role_ids') or [])
    # Validate roles exist
    roles = session.execute(select(Role).where(Role.id.in_(list(role_ids)))).scalars().all() if role_ids else []
    missing = role_ids - {r.id for r in roles}
    if missing:
        abort(400, description=f'Unknown role ids: {sorted(missing)}')
    assert_not_removing_last_owner(user.id, role_ids)
    # Edit the collection in place so the change shows up on the user's audit diff
    kept = [ur for ur in user.user_roles if ur.role_id in role_ids]
    current = {ur.role_id for ur in kept}
    user.user_roles = kept + [UserRole(role_id=rid) for rid in sorted(role_ids - current)]
    session.commit()
    return {'user_id': user.id, 'role_ids': sorted(role_ids)}


# --- Roles ---

@iam_bp.get('/roles')
@require_permissions('ADMIN.ROLE.MANAGE')
def list_roles():
    session = get_db()
    q = session.query(Role).order_by(Role.id.asc())
    paged_q, total, limit, offset = apply_pagination(q)
    rows = paged_q.all()
    data = [
        {'id': r.id, 'name': r.name, 'is_system': r.is_system, 'permissions': [rp.permission.code for rp in r.permissions]}
        for r in rows
    ]
    latest_ts = rows[0].updated_at if rows else None
    resp, etag = make_cached_list_response(data, total, limit, offset, latest_ts)
    cond = handle_conditional(etag, latest_ts)
    if cond:
        return cond
    return resp


@iam_bp.post('/roles')
@require_permissions('ADMIN.ROLE.MANAGE')
def create_role():
    data = request.json or {}
    name = data.get('name')
    if not name:
        abort(400, description='name required')
    session = get_db()
    if session.execute(select(Role).where(Role.name==name)).scalar_one_or_none():
        abort(400, description='role exists')
    role = Role(name=name, is_system=False, description_i18n=data.get('description_i18n') or {})
    session.add(role)
    session.commit()
    return {'id': role.id, 'name': role.name}, 201


@iam_bp.delete('/roles/<int:role_id>')
@require_permissions('ADMIN.ROLE.MANAGE')
def delete_role(role_id: int):
    session = get_db()
    role = session.execute(select(Role).where(Role.id==role_id)).scalar_one_or_none()
    if not role:
        abort(404)
    if role.is_system:
        abort(400, description='system roles cannot be deleted')
    session.delete(role)
    session.commit()
    return {'status': 'deleted'}


def _user_json(u: User):
    return {
        'id': u.id,
        'name': u.name,
        'email': u.email,
        'phone': u.phone,
        'is_active': u.is_active,
        'locale': u.locale,
    }
