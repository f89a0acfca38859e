from __future__ import annotations
from flask import Blueprint, request, abort
from sqlalchemy import select
from app import get_db
from app.models.product import Product
from flask_jwt_extended import get_jwt_identity
from app.decorators.auth import require_permissions
from app.utils.listing import apply_pagination, handle_conditional, make_cached_list_response
from app.utils.filters import apply_filters

inv_bp = Blueprint('inventory', __name__)


@inv_bp.get('/products')
@require_permissions('INV.READ')
def list_products():
    session = get_db()
    q = session.query(Product)
    filter_specs = {
        'sku': {'op': lambda qu, v: qu.filter(Product.sku==v)},
        'name': {'op': lambda qu, v: qu.filter(Product.name==v)},
        'branch_id': {'coerce': int, 'op': lambda qu, v: qu.filter(Product.branch_id==v)},
    }
    q = apply_filters(q, filter_specs, request.args)
    q = q.order_by(Product.id.asc())
    paged_q, total, limit, offset = apply_pagination(q)
    rows = paged_q.all()
    latest_ts = rows[0].updated_at if rows else None
    resp, etag = make_cached_list_response([_product_json(p) for p in rows], total, limit, offset, latest_ts)
    cond = handle_conditional(etag, latest_ts)
    if cond:
        return cond
    return resp


@inv_bp.post('/products')
@require_permissions('INV.ADJUST')
def create_product():
    session = get_db()
    data = request.json or {}
    name = data.get('name'); sku = data.get('sku'); branch_id = data.get('branch_id')
    if not all([name, sku]) or branch_id is None:
        abort(400, description='name, sku, branch_id required')
    if session.execute(select(Product).where(Product.sku==sku)).scalar_one_or_none():
        abort(400, description='sku exists')
    try:
        qty = int(data.get('quantity', 0))
        price = int(data.get('unit_price_cents', 0))
    except (TypeError, ValueError):
        abort(400, description='quantity and unit_price_cents must be int')
    p = Product(
        name=name, sku=sku, branch_id=int(branch_id), quantity=qty, unit_price_cents=price,
        description_i18n=data.get('description_i18n') or {}, created_by=int(get_jwt_identity()),
    )
    session.add(p)
    session.commit()
    return _product_json(p), 201


@inv_bp.get('/products/<int:product_id>')
@require_permissions('INV.READ')
def get_product(product_id: int):
    p = _get_or_404(product_id)
    return _product_json(p)


@inv_bp.put('/products/<int:product_id>/adjust')
@require_permissions('INV.ADJUST')
def adjust_product(product_id: int):
    session = get_db()
    p = _get_or_404(product_id)
    data = request.json or {}
    delta = data.get('delta')
    if delta is None:
        abort(400, description='delta required')
    try:
        delta = int(delta)
    except (TypeError, ValueError):
        abort(400, description='delta must be int')
    if p.quantity + delta < 0:
        abort(400, description='insufficient stock')
    p.quantity = p.quantity + delta
    session.commit()
    return _product_json(p)


@inv_bp.delete('/products/<int:product_id>')
@require_permissions('INV.DELETE')
def delete_product(product_id: int):
    session = get_db()
    p = _get_or_404(product_id)
    session.delete(p)
    session.commit()
    return {'status': 'deleted'}


def _get_or_404(product_id: int) -> Product:
    p = get_db().execute(select(Product).where(Product.id==product_id)).scalar_one_or_none()
    if not p:
        abort(404)
    return p


def _product_json(p: Product):
    return {
        'id': p.id,
        'name': p.name,
        'sku': p.sku,
        'branch_id': p.branch_id,
        'quantity': p.quantity,
        'unit_price_cents': p.unit_price_cents,
        'description_i18n': p.description_i18n or {}
    }
