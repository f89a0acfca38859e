from __future__ import annotations
from flask import Blueprint, request, abort
from sqlalchemy import select
from app import get_db
from app.models.customer import Customer
from app.decorators.auth import require_permissions
from app.utils.listing import apply_pagination, handle_conditional, make_cached_list_response
from app.utils.filters import apply_filters

cust_bp = Blueprint('customers', __name__)

EDITABLE_FIELDS = ('full_name', 'phone', 'address', 'notes', 'active')


@cust_bp.get('')
@require_permissions('CUST.READ')
def list_customers():
    session = get_db()
    q = session.query(Customer)
    filter_specs = {
        'name': {'op': lambda qu, v: qu.filter(Customer.full_name.ilike(f'%{v}%'))},
        'phone': {'op': lambda qu, v: qu.filter(Customer.phone==v)},
        'active': {'coerce': lambda v: v.lower() in ('1', 'true', 'yes'), 'op': lambda qu, v: qu.filter(Customer.active==v)},
    }
    q = apply_filters(q, filter_specs, request.args)
    q = q.order_by(Customer.id.asc())
    paged_q, total, limit, offset = apply_pagination(q)
    rows = paged_q.all()
    latest_ts = rows[0].updated_at if rows else None
    resp, etag = make_cached_list_response([_customer_json(c) for c in rows], total, limit, offset, latest_ts)
    cond = handle_conditional(etag, latest_ts)
    if cond:
        return cond
    return resp


@cust_bp.post('')
@require_permissions('CUST.MANAGE')
def create_customer():
    data = request.json or {}
    full_name = data.get('full_name')
    if not full_name:
        abort(400, description='full_name required')
    session = get_db()
    c = Customer(
        full_name=full_name,
        phone=data.get('phone'),
        address=data.get('address'),
        notes=data.get('notes'),
        balance_cents=0,
    )
    if data.get('pin'):
        _validate_pin(data['pin'])
        c.set_pin(str(data['pin']))
    session.add(c)
    session.commit()
    return _customer_json(c), 201


@cust_bp.get('/<int:customer_id>')
@require_permissions('CUST.READ')
def get_customer(customer_id: int):
    return _customer_json(_get_or_404(customer_id))


@cust_bp.put('/<int:customer_id>')
@require_permissions('CUST.MANAGE')
def update_customer(customer_id: int):
    session = get_db()
    c = _get_or_404(customer_id)
    data = request.json or {}
    unknown = set(data) - set(EDITABLE_FIELDS)
    if unknown:
        abort(400, description=f'Unknown fields: {sorted(unknown)}')
    if 'full_name' in data and not data['full_name']:
        abort(400, description='full_name cannot be empty')
    for field in EDITABLE_FIELDS:
        if field in data:
            setattr(c, field, bool(data[field]) if field == 'active' else data[field])
    session.commit()
    return _customer_json(c)


@cust_bp.put('/<int:customer_id>/pin')
@require_permissions('CUST.MANAGE')
def set_customer_pin(customer_id: int):
    session = get_db()
    c = _get_or_404(customer_id)
    pin = (request.json or {}).get('pin')
    _validate_pin(pin)
    c.set_pin(str(pin))
    session.commit()
    return _customer_json(c)


@cust_bp.delete('/<int:customer_id>')
@require_permissions('CUST.DELETE')
def delete_customer(customer_id: int):
    session = get_db()
    c = _get_or_404(customer_id)
    if c.balance_cents:
        abort(400, description='customer has an outstanding balance')
    session.delete(c)
    session.commit()
    return {'status': 'deleted'}


def _validate_pin(pin):
    if pin is None or not str(pin).isdigit() or not 4 <= len(str(pin)) <= 8:
        abort(400, description='pin must be 4-8 digits')


def _get_or_404(customer_id: int) -> Customer:
    c = get_db().execute(select(Customer).where(Customer.id==customer_id)).scalar_one_or_none()
    if not c:
        abort(404)
    return c


def _customer_json(c: Customer):
    return {
        'id': c.id,
        'full_name': c.full_name,
        'phone': c.phone,
        'address': c.address,
        'balance_cents': c.balance_cents,
        'portal_enabled': bool(c.portal_enabled),
        'has_pin': bool(c.pin_hash),
        'active': c.active,
        'notes': c.notes,
    }
