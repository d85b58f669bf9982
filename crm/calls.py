"""
Call result router.

Every call outcome an operator records is appended to the call history and
its phone marked as issued. Depending on the outcome it is also fanned out to
the export ledgers and to one of the two pipelines.
"""

import logging

from call_center.utils import next_record_id
from .models import (
    CALL_STATUS_PASSED, CALL_STATUS_TO_KUPAT, CALL_STATUSES_AUTO, CALL_STATUSES_NDZ,
    EXPORT_SHEET_AUTO, EXPORT_SHEET_NDZ,
    canonical_call_status, build_call_result, build_order, build_kupat_order,
)
from .tasks import enqueue, export_auto_ndz_row, export_kupat_row

logger = logging.getLogger(__name__)


def record_call_result(state, status, operator, phone, name, note):
    """
    Never rejects a call result. Returns the routing outcome:
    {'callResult': ..., 'order': ... | None, 'kupatOrder': ... | None}
    """
    with state.store.transaction('history') as history:
        call_result = build_call_result(next_record_id(history), status, operator, phone, name, note)
        history.append(call_result)

    note = call_result['note']
    label = canonical_call_status(status)

    if label in CALL_STATUSES_AUTO or label in CALL_STATUSES_NDZ:
        kind = EXPORT_SHEET_AUTO if label in CALL_STATUSES_AUTO else EXPORT_SHEET_NDZ
        enqueue(export_auto_ndz_row, kind, {
            'operator': operator, 'name': name, 'phone': phone,
            'tz': '', 'address': '', 'age': '', 'extra': '', 'note': note,
        })

    state.registry.mark_raw(phone)

    order = None
    kupat_order = None

    if label == CALL_STATUS_PASSED:
        with state.store.transaction('orders') as orders:
            order = build_order(next_record_id(orders), operator, name, phone, note)
            orders.append(order)
        logger.info(f"Order {order['id']} created by {operator} for {phone}")

    elif label == CALL_STATUS_TO_KUPAT:
        enqueue(export_kupat_row, {'operator': operator, 'name': name, 'phone': phone, 'note': note})

        with state.store.transaction('kupat') as kupat_orders:
            kupat_order = build_kupat_order(next_record_id(kupat_orders), operator, name, phone, note)
            kupat_orders.append(kupat_order)
        logger.info(f"Kupat order {kupat_order['id']} created by {operator} for {phone}")

    else:
        logger.debug(f"Call result {status!r} from {operator} logged without pipeline object")

    return {'callResult': call_result, 'order': order, 'kupatOrder': kupat_order}
