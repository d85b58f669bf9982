"""
Personal call-me-back queue.

Items are owned by the user who created them. A transfer promotes the item
into one of the pipelines and removes it from the queue.
"""

import logging

from call_center.exceptions import ValidationError
from call_center.utils import clean_str, find_record, next_record_id, now_local_str, random_record_id
from .kupat import stamp_to_closer
from .models import KupatStatus, build_callback, build_order, build_kupat_order
from .permissions import require
from .utils import owned_index

logger = logging.getLogger(__name__)

KUPAT_SOURCE = 'kupat'


def list_callbacks(state, login):
    login = clean_str(login)
    if not login:
        raise ValidationError('login_required')
    return [c for c in state.store.load('callbacks', []) if isinstance(c, dict) and c.get('owner') == login]


def add_callback(state, login, role, source=None, source_id=None, client_name=None, phone=None, text=None, card=None):
    if not login:
        raise ValidationError('login_required')
    require(role, 'callback.add')

    item = build_callback(random_record_id(), str(login), str(role), source, source_id, client_name, phone, text, card)
    with state.store.transaction('callbacks') as items:
        items.append(item)
    return item


def update_callback(state, login, item_id, client_name=None, phone=None, text=None):
    if not login or not item_id:
        raise ValidationError('bad_request')

    with state.store.transaction('callbacks') as items:
        item = items[owned_index(items, item_id, login)]
        item['clientName'] = str(client_name or '')
        item['phone'] = str(phone or '')
        item['text'] = str(text or '')
        item['updatedAt'] = now_local_str()
    return item


def delete_callback(state, login, item_id):
    if not login or not item_id:
        raise ValidationError('bad_request')

    with state.store.transaction('callbacks') as items:
        items.pop(owned_index(items, item_id, login))


def transfer_to_tech(state, login, role, item_id):
    if not login or not item_id:
        raise ValidationError('bad_request')
    require(role, 'callback.transfer_tech')

    with state.store.transaction('callbacks') as items:
        idx = owned_index(items, item_id, login)
        item = items[idx]

        with state.store.transaction('orders') as orders:
            order = build_order(next_record_id(orders), login, item.get('clientName'), item.get('phone'), item.get('text'))
            orders.append(order)

        items.pop(idx)

    logger.info(f"Callback {item_id} of {login} transferred to tech as order {order['id']}")
    return order


def transfer_to_closer(state, login, role, item_id):
    if not login or not item_id:
        raise ValidationError('bad_request')
    require(role, 'callback.transfer_closer')

    with state.store.transaction('callbacks') as items:
        idx = owned_index(items, item_id, login)
        item = items[idx]

        with state.store.transaction('kupat') as kupat_orders:
            target = None
            if item.get('source') == KUPAT_SOURCE and item.get('sourceId'):
                target = find_record(kupat_orders, item['sourceId'])

            if target is None:
                target = build_kupat_order(
                    next_record_id(kupat_orders), item.get('owner'), item.get('clientName'),
                    item.get('phone'), item.get('text'), status=KupatStatus.TO_CLOSER.value, kupat_user=login,
                )
                kupat_orders.append(target)

            target['status'] = KupatStatus.TO_CLOSER.value
            target['kupatUser'] = login
            stamp_to_closer(target)
            if item.get('text'):
                target['kupatNote'] = item['text']

        items.pop(idx)

    logger.info(f"Callback {item_id} of {login} transferred to closer on kupat order {target['id']}")
    return target
