"""
Main order pipeline: operator -> technician -> closer -> final.

All mutations run inside a collection transaction; a guard that raises
leaves the stored orders untouched.
"""

import logging

from call_center.exceptions import AuthorizationError, NotFoundError, TransitionError, ValidationError
from call_center.utils import clean_str, next_record_id, now_local_str, find_index
from .models import (
    Role, OrderStatus, ORDER_TRANSITIONS, TECH_ACTION_STATUSES,
    build_order, build_comment, build_stats_event, parse_status, can_transition,
)
from .permissions import can_perform, require
from .stats import append_event
from .utils import (
    ASSIGNEE_SLOTS, normalize_assignees, with_assignee_lists,
    add_assignee, promote_assignee, is_duplicate_comment, get_record_or_404,
)

logger = logging.getLogger(__name__)

# technician work queue as shown to techs and operators
TECH_QUEUE_VIEW = (OrderStatus.NEW.value, OrderStatus.RE_WORK.value, OrderStatus.RETURN.value)
CLOSER_VIEW = (OrderStatus.CLOSER.value, OrderStatus.FINAL.value)


def _transition(order, target):
    current = order.get('status')
    if not can_transition(ORDER_TRANSITIONS, current, target):
        logger.warning(f"Rejected order {order.get('id')} transition {current} -> {target}")
        raise TransitionError()
    order['status'] = target
    logger.info(f"Order {order.get('id')} moved {current} -> {target}")


# ============================================================================
# QUERIES
# ============================================================================

def list_orders(state, login, role, view=None):
    orders = [with_assignee_lists(o) for o in state.store.load('orders', []) if isinstance(o, dict)]

    if role == Role.ADMIN.value:
        return orders

    if role == Role.OPERATOR.value:
        if view == 'returns':
            return [o for o in orders if o.get('status') == OrderStatus.RETURN.value]
        return [o for o in orders if o.get('operator') == login]

    if role == Role.TECH.value:
        if view == 'tech-my':
            return [
                o for o in orders
                if o.get('status') == OrderStatus.TECH_WORK.value and login in o['techs']
            ]
        if view == 'my-orders':
            return [o for o in orders if o['tech'] == login]
        return [o for o in orders if o.get('status') in TECH_QUEUE_VIEW]

    if role == Role.CLOSER.value:
        return [o for o in orders if o.get('status') in CLOSER_VIEW or login in o['closers']]

    return []


def my_clients(state, login, role):
    """Orders of an operator that reached a closer (all of them for admin)."""
    if not login:
        raise ValidationError('login_required')
    require(role, 'clients.view')

    orders = [with_assignee_lists(o) for o in state.store.load('orders', []) if isinstance(o, dict)]
    if role == Role.ADMIN.value:
        return [o for o in orders if o['closer']]
    return [o for o in orders if o.get('operator') == login and o['closer']]


# ============================================================================
# MUTATIONS
# ============================================================================

def compose_details(details=None, tz=None, address=None, age=None, extra=None):
    parts = []
    if details:
        parts.append(str(details))
    if tz:
        parts.append(f"ТЗ: {tz}")
    if address:
        parts.append(f"Адрес: {address}")
    if age:
        parts.append(f"Возраст: {age}")
    if extra:
        parts.append(f"Доп.Инфа: {extra}")
    return '\n'.join(parts)


def create_direct(state, login, role, client_name, phone, details=None, tz=None, address=None, age=None, extra=None):
    if not login or not role:
        raise ValidationError('bad_request')
    require(role, 'order.create_direct')
    if not clean_str(phone):
        raise ValidationError('phone_required')

    full_details = compose_details(details, tz, address, age, extra)
    with state.store.transaction('orders') as orders:
        order = build_order(next_record_id(orders), login, client_name, phone, full_details, stamp_hand_off=False)
        orders.append(order)

    state.registry.mark_raw(phone)
    append_event(state, build_stats_event(login, role, 'CREATE_ORDER', phone))

    logger.info(f"Order {order['id']} created directly by {login} ({role})")
    return order


def to_tech(state, order_id, comment=None):
    """Operator sends an order back to the technician queue."""
    with state.store.transaction('orders') as orders:
        order = get_record_or_404(orders, order_id)
        normalize_assignees(order)
        _transition(order, OrderStatus.RE_WORK.value)
        order['operatorComment'] = comment
    return order


def order_action(state, order_id, role, status, tech_login=None, info=None):
    require(role, 'order.action')
    target = parse_status(OrderStatus, status)
    if target not in TECH_ACTION_STATUSES:
        raise ValidationError('bad_status')

    with state.store.transaction('orders') as orders:
        order = get_record_or_404(orders, order_id)
        normalize_assignees(order)
        _transition(order, target)

        if tech_login:
            add_assignee(order, 'tech', tech_login)
        if target == OrderStatus.CLOSER.value and not order.get('techToCloserAt'):
            order['techToCloserAt'] = now_local_str()
        if info:
            order['techInfo'] = info
    return order


def assign(state, order_id, list_type, assignee, requester_role):
    if not order_id or not list_type or not assignee:
        raise ValidationError('bad_request')
    if list_type not in ASSIGNEE_SLOTS:
        raise ValidationError('bad_list')
    require(requester_role, f"order.assign_{list_type}")

    name = clean_str(assignee)
    if not name:
        raise ValidationError('bad_assignee')

    with state.store.transaction('orders') as orders:
        order = get_record_or_404(orders, order_id)
        normalize_assignees(order)
        add_assignee(order, list_type, name)

    logger.info(f"Order {order_id}: {name} assigned as {list_type}")
    return order


def add_comment(state, order_id, login, role, text, file_ref=None):
    """
    Returns {'deduplicated': bool, 'order': ...}. A stored upload is deleted
    whenever the comment is rejected.
    """
    with state.uploads.discard_on_error(file_ref):
        clean = clean_str(text)
        with state.store.transaction('orders') as orders:
            order = get_record_or_404(orders, order_id)

            if not clean and not file_ref:
                raise ValidationError('empty')
            if file_ref and not can_perform(role, 'attach_file'):
                raise AuthorizationError('forbidden_file')
            if not can_perform(role, 'order.comment', login=login, record=order):
                raise AuthorizationError()

            normalize_assignees(order)
            comments = order.setdefault('comments', [])
            if is_duplicate_comment(comments, login, role, clean, file_ref):
                return {'deduplicated': True, 'order': order}

            # first interaction claims an unassigned slot
            if role == Role.TECH.value and not order['techs']:
                add_assignee(order, 'tech', login)
            if role == Role.CLOSER.value and not order['closers'] and order.get('status') == OrderStatus.CLOSER.value:
                add_assignee(order, 'closer', login)

            comments.append(build_comment(login, role, clean, file_ref, file_key='file'))
    return {'deduplicated': False, 'order': order}


def final(state, order_id, role, closer_login, color=None, text=None):
    require(role, 'order.final')
    closer_login = clean_str(closer_login)
    if not closer_login:
        raise ValidationError('login_required')

    with state.store.transaction('orders') as orders:
        order = get_record_or_404(orders, order_id)
        normalize_assignees(order)
        _transition(order, OrderStatus.FINAL.value)

        promote_assignee(order, 'closer', closer_login)
        order['finalColor'] = color
        order['finalText'] = text
    return order


def delete_self(state, order_id, login, role):
    if not order_id or not login or not role:
        raise ValidationError('bad_request')

    with state.store.transaction('orders') as orders:
        idx = find_index(orders, order_id)
        if idx < 0:
            raise NotFoundError()
        require(role, 'order.delete', login=login, record=orders[idx])
        removed = orders.pop(idx)

    logger.info(f"Order {order_id} deleted by {login} ({role})")
    return removed


def delete_item(state, item_id, item_type, requester_role):
    """Admin removal of an order ('orders') or a kupat order (any other type)."""
    require(requester_role, 'item.delete')
    collection = 'orders' if item_type == 'orders' else 'kupat'

    with state.store.transaction(collection) as records:
        idx = find_index(records, item_id)
        if idx < 0:
            raise NotFoundError()
        removed = records.pop(idx)

    logger.info(f"{collection} item {item_id} deleted")
    return removed
