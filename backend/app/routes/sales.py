from __future__ import annotations
from flask import Blueprint, request, abort
from sqlalchemy import select
from app import get_db
from app.models.order import Order
from app.models.product import Product
from app.models.customer import Customer
from flask_jwt_extended import get_jwt_identity
from app.decorators.auth import require_permissions
from app.utils.listing import apply_pagination, handle_conditional, make_cached_list_response
from app.utils.filters import apply_filters
from app.utils.fsm import TransitionValidator
from app.utils.sorting import apply_multi_sort

sales_bp = Blueprint('sales', __name__)

# Order lifecycle graph:
# NEW -> APPROVED -> FULFILLED -> COMPLETED
# NEW / APPROVED / FULFILLED -> CANCELLED
ORDER_FSM = TransitionValidator({
    Order.STATUS_NEW: {Order.STATUS_APPROVED, Order.STATUS_CANCELLED},
    Order.STATUS_APPROVED: {Order.STATUS_FULFILLED, Order.STATUS_CANCELLED},
    Order.STATUS_FULFILLED: {Order.STATUS_COMPLETED, Order.STATUS_CANCELLED},
    Order.STATUS_COMPLETED: set(),
    Order.STATUS_CANCELLED: set()
})

# action segment -> (target status, permission)
TRANSITIONS = {
    'approve': (Order.STATUS_APPROVED, 'SALES.APPROVE'),
    'fulfill': (Order.STATUS_FULFILLED, 'SALES.FULFILL'),
    'complete': (Order.STATUS_COMPLETED, 'SALES.COMPLETE'),
    'cancel': (Order.STATUS_CANCELLED, 'SALES.CANCEL'),
}


@sales_bp.get('/orders')
@require_permissions('SALES.READ')
def list_orders():
    session = get_db()
    q = session.query(Order)
    filter_specs = {
        'customer_name': {'op': lambda qu, v: qu.filter(Order.customer_name.ilike(f'%{v}%'))},
        'customer_id': {'coerce': int, 'op': lambda qu, v: qu.filter(Order.customer_id==v)},
        'status': {'op': lambda qu, v: qu.filter(Order.status==v), 'validate': lambda v: v in Order.ALL_STATUSES},
        'branch_id': {'coerce': int, 'op': lambda qu, v: qu.filter(Order.branch_id==v)},
    }
    q = apply_filters(q, filter_specs, request.args)
    allowed = {
        'customer_name': Order.customer_name,
        'status': Order.status,
        'total_cents': Order.total_cents,
        'updated_at': Order.updated_at,
        'id': Order.id
    }
    q = apply_multi_sort(q, request.args.get('sort'), allowed, Order.id)
    paged_q, total, limit, offset = apply_pagination(q)
    rows = paged_q.all()
    latest_ts = rows[0].updated_at if rows else None
    resp, etag = make_cached_list_response([_order_json(o) for o in rows], total, limit, offset, latest_ts)
    cond = handle_conditional(etag, latest_ts)
    if cond:
        return cond
    return resp


@sales_bp.post('/orders')
@require_permissions('SALES.CREATE')
def create_order():
    """Create an order.

    When product_id/quantity are given the stock is taken from the product and
    the total priced from it; when customer_id is given the total is added to
    the customer's balance. All writes commit together.
    """
    session = get_db()
    data = request.json or {}
    branch_id = data.get('branch_id')
    if branch_id is None:
        abort(400, description='branch_id required')
    customer = None
    if data.get('customer_id') is not None:
        customer = session.execute(select(Customer).where(Customer.id==int(data['customer_id']))).scalar_one_or_none()
        if not customer or not customer.active:
            abort(400, description='unknown or inactive customer')
    customer_name = data.get('customer_name') or (customer.full_name if customer else None)
    if not customer_name:
        abort(400, description='customer_name or customer_id required')
    try:
        quantity = int(data.get('quantity', 0))
        total_cents = int(data.get('total_cents', 0))
    except (TypeError, ValueError):
        abort(400, description='quantity and total_cents must be int')
    product = None
    if data.get('product_id') is not None:
        product = session.execute(select(Product).where(Product.id==int(data['product_id']))).scalar_one_or_none()
        if not product:
            abort(400, description='unknown product')
        if quantity <= 0:
            abort(400, description='quantity must be positive')
        if product.quantity < quantity:
            abort(400, description='insufficient stock')
        product.quantity = product.quantity - quantity
        total_cents = total_cents or product.unit_price_cents * quantity
    if customer is not None:
        customer.balance_cents = customer.balance_cents + total_cents
    o = Order(
        customer_name=customer_name,
        customer_id=customer.id if customer else None,
        product_id=product.id if product else None,
        quantity=quantity,
        branch_id=int(branch_id),
        total_cents=total_cents,
        created_by=int(get_jwt_identity()),
    )
    session.add(o)
    session.commit()
    return _order_json(o), 201


@sales_bp.get('/orders/<int:order_id>')
@require_permissions('SALES.READ')
def get_order(order_id: int):
    return _order_json(_get_or_404(order_id))


@sales_bp.post('/orders/<int:order_id>/<action>')
def transition_order(order_id: int, action: str):
    if action not in TRANSITIONS:
        abort(404)
    target, perm = TRANSITIONS[action]
    return require_permissions(perm)(_transition)(order_id, target)


@sales_bp.delete('/orders/<int:order_id>')
@require_permissions('SALES.DELETE')
def delete_order(order_id: int):
    session = get_db()
    o = _get_or_404(order_id)
    if o.status not in (Order.STATUS_NEW, Order.STATUS_CANCELLED):
        abort(400, description='only NEW or CANCELLED orders can be deleted')
    session.delete(o)
    session.commit()
    return {'status': 'deleted'}


def _transition(order_id: int, target_status: str):
    session = get_db()
    o = _get_or_404(order_id)
    ORDER_FSM.assert_can_transition(o.status, target_status)
    o.status = target_status
    session.commit()
    return _order_json(o)


def _get_or_404(order_id: int) -> Order:
    o = get_db().execute(select(Order).where(Order.id==order_id)).scalar_one_or_none()
    if not o:
        abort(404)
    return o


def _order_json(o: Order):
    return {
        'id': o.id,
        'branch_id': o.branch_id,
        'customer_id': o.customer_id,
        'customer_name': o.customer_name,
        'product_id': o.product_id,
        'quantity': o.quantity,
        'total_cents': o.total_cents,
        'status': o.status
    }
