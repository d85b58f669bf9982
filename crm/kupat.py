"""
Kupat pipeline: operator -> kupat agent -> closer -> final.
"""

import logging

from call_center.exceptions import TransitionError, ValidationError
from call_center.utils import clean_str, now_local_str
from .models import (
    Role, KupatStatus, KUPAT_TRANSITIONS, KUPAT_ACTION_STATUSES,
    build_comment, parse_status, can_transition,
)
from .permissions import require
from .utils import is_duplicate_comment, get_record_or_404

logger = logging.getLogger(__name__)

COMMENT_MAX_LENGTH = 2000
CLOSER_VIEW = (KupatStatus.TO_CLOSER.value, KupatStatus.FINAL.value)


def _transition(order, target):
    current = order.get('status')
    if not can_transition(KUPAT_TRANSITIONS, current, target):
        logger.warning(f"Rejected kupat order {order.get('id')} transition {current} -> {target}")
        raise TransitionError()
    order['status'] = target
    logger.info(f"Kupat order {order.get('id')} moved {current} -> {target}")


def stamp_to_closer(order):
    if not order.get('kupatToCloserAt'):
        order['kupatToCloserAt'] = now_local_str()


def list_kupat(state, login, role, view=None):
    orders = [o for o in state.store.load('kupat', []) if isinstance(o, dict)]

    if role == Role.ADMIN.value:
        return orders
    if role == Role.KUPAT.value:
        if view == 'incoming':
            return [o for o in orders if o.get('status') == KupatStatus.NEW.value]
        return orders
    if role == Role.CLOSER.value:
        return [o for o in orders if o.get('status') in CLOSER_VIEW or o.get('closer') == login]
    return []


def kupat_action(state, order_id, role, status, user, note=None):
    require(role, 'kupat.action')
    target = parse_status(KupatStatus, status)
    if target not in KUPAT_ACTION_STATUSES:
        raise ValidationError('bad_status')

    with state.store.transaction('kupat') as orders:
        order = get_record_or_404(orders, order_id)
        _transition(order, target)

        order['kupatUser'] = user
        if target == KupatStatus.TO_CLOSER.value:
            stamp_to_closer(order)
        if note:
            order['kupatNote'] = note
    return order


def assign_closer(state, order_id, closer, requester_role):
    require(requester_role, 'kupat.assign_closer')

    with state.store.transaction('kupat') as orders:
        order = get_record_or_404(orders, order_id)
        order['closer'] = clean_str(closer) or None

    logger.info(f"Kupat order {order_id}: closer set to {order['closer']}")
    return order


def add_comment(state, order_id, login, role, text, file_ref=None):
    with state.uploads.discard_on_error(file_ref):
        clean = clean_str(text)[:COMMENT_MAX_LENGTH]
        if not order_id or not login or (not clean and not file_ref):
            raise ValidationError('bad_request')

        with state.store.transaction('kupat') as orders:
            order = get_record_or_404(orders, order_id)
            require(role, 'kupat.comment', login=login, record=order)

            comments = order.setdefault('comments', [])
            if is_duplicate_comment(comments, login, role, clean, file_ref, file_key='fileUrl'):
                return {'deduplicated': True, 'order': order}

            comments.append(build_comment(str(login), role, clean, file_ref, file_key='fileUrl'))
    return {'deduplicated': False, 'order': order}


def final(state, order_id, role, closer, text=None, color=None):
    require(role, 'kupat.final')

    with state.store.transaction('kupat') as orders:
        order = get_record_or_404(orders, order_id)
        _transition(order, KupatStatus.FINAL.value)

        order['closer'] = clean_str(closer) or order.get('closer')
        order['finalText'] = text
        order['finalColor'] = color
    return order
