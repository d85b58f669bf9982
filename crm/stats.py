"""
Per-user statistics and the action event log.

Counters are computed on read from the call history and both pipelines.
The event log is best-effort telemetry: appending to it never fails the
operation that produced the event.
"""

import logging

from call_center.exceptions import AuthorizationError, ValidationError
from call_center.utils import date_part, time_part
from .models import (
    Role, OrderStatus, KupatStatus, KUPAT_REFUSALS, OPERATOR_COMMENT_STATUSES,
    CALL_STATUS_PASSED, CALL_STATUS_TO_KUPAT, build_stats_event,
)
from .tasks import enqueue, export_stats_event
from .users import load_users, find_user
from .utils import assignee_list

logger = logging.getLogger(__name__)

DAY_COUNTERS = ('calls', 'auto', 'ndz', 'refuse', 'ivrit', 'kupat', 'passed', 'closed')


def _primary(order, slot):
    names = assignee_list(order, slot)
    return names[0] if names else None


def _count(records, predicate):
    return sum(1 for record in records if predicate(record))


def _documents(state, collection):
    return [r for r in state.store.load(collection, []) if isinstance(r, dict)]


def is_admin(state, login, role):
    if role != Role.ADMIN.value:
        return False
    user = find_user(state, login)
    return user is not None and user.get('role') == Role.ADMIN.value


def call_logs(state, role):
    if role != Role.ADMIN.value:
        return []
    return _documents(state, 'history')


def _call_counters(history, login):
    calls = [r for r in history if r.get('user') == login]
    return {
        'total': len(calls),
        'passedToTech': _count(calls, lambda r: r.get('status') == CALL_STATUS_PASSED),
        'sentToKupat': _count(calls, lambda r: r.get('status') == CALL_STATUS_TO_KUPAT),
    }


def me_stats(state, login, role):
    user = find_user(state, login)
    history = _documents(state, 'history')
    orders = _documents(state, 'orders')
    kupat_orders = _documents(state, 'kupat')

    def owns_order(order):
        if role == Role.OPERATOR.value:
            return order.get('operator') == login
        if role == Role.TECH.value:
            return _primary(order, 'tech') == login
        if role == Role.CLOSER.value:
            return _primary(order, 'closer') == login
        return role == Role.ADMIN.value

    def owns_kupat(order):
        if role == Role.OPERATOR.value:
            return order.get('operatorFrom') == login
        if role == Role.KUPAT.value:
            return order.get('kupatUser') == login
        if role == Role.CLOSER.value:
            return order.get('closer') == login
        return role == Role.ADMIN.value

    main_mine = [o for o in orders if owns_order(o)]
    kupat_mine = [o for o in kupat_orders if owns_kupat(o)]

    main = {
        'total': len(main_mine),
        'new': _count(main_mine, lambda o: o.get('status') in OPERATOR_COMMENT_STATUSES),
        'work': _count(main_mine, lambda o: o.get('status') in (
            OrderStatus.WORK.value, OrderStatus.TECH.value, OrderStatus.TECH_WORK.value)),
        'closer': _count(main_mine, lambda o: o.get('status') == OrderStatus.CLOSER.value),
        'final': _count(main_mine, lambda o: o.get('status') == OrderStatus.FINAL.value),
        'refuse': _count(main_mine, lambda o: o.get('status') == OrderStatus.REFUSE.value),
    }
    kupat = {
        'total': len(kupat_mine),
        'incoming': _count(kupat_mine, lambda o: o.get('status') == KupatStatus.NEW.value),
        'work': _count(kupat_mine, lambda o: o.get('status') == KupatStatus.WORK.value),
        'closer': _count(kupat_mine, lambda o: o.get('status') == KupatStatus.TO_CLOSER.value),
        'final': _count(kupat_mine, lambda o: o.get('status') == KupatStatus.FINAL.value),
        'refuse': _count(kupat_mine, lambda o: o.get('status') in KUPAT_REFUSALS),
    }

    operator_orders = [o for o in orders if o.get('operator') == login and _primary(o, 'closer')]
    closer_orders = [o for o in orders if _primary(o, 'closer') == login]
    closer = {
        'operatorToCloser': len(operator_orders),
        'operatorFinalByCloser': _count(operator_orders, lambda o: o.get('status') == OrderStatus.FINAL.value),
        'closerWorked': len(closer_orders),
        'closerFinal': _count(closer_orders, lambda o: o.get('status') == OrderStatus.FINAL.value),
    }

    return {
        'balance': user['balance'] if user else 0.0,
        'calls': _call_counters(history, login),
        'closer': closer,
        'stats': {'main': main, 'kupat': kupat},
    }


def global_stats(state):
    history = _documents(state, 'history')
    orders = _documents(state, 'orders')
    kupat_orders = _documents(state, 'kupat')

    by_users = []
    for user in load_users(state.store):
        login = user.get('login')
        closed = [o for o in orders if _primary(o, 'closer') == login]
        by_users.append({
            'login': login,
            'role': user.get('role'),
            'balance': user['balance'],
            'calls': _call_counters(history, login),
            'main': {
                'created': _count(orders, lambda o: o.get('operator') == login),
                'techTook': _count(orders, lambda o: _primary(o, 'tech') == login),
                'closerTook': len(closed),
                'closerFinal': _count(closed, lambda o: o.get('status') == OrderStatus.FINAL.value),
                'closerRefuse': _count(closed, lambda o: o.get('status') == OrderStatus.REFUSE.value),
            },
            'kupat': {
                'fromOperator': _count(kupat_orders, lambda o: o.get('operatorFrom') == login),
                'kupatTook': _count(kupat_orders, lambda o: o.get('kupatUser') == login),
                'kupatToCloser': _count(kupat_orders, lambda o: (
                    o.get('kupatUser') == login and o.get('status') == KupatStatus.TO_CLOSER.value)),
                'kupatFinalByCloser': _count(kupat_orders, lambda o: (
                    o.get('closer') == login and o.get('status') == KupatStatus.FINAL.value)),
            },
        })
    return {'byUsers': by_users}


# ============================================================================
# EVENT LOG
# ============================================================================

def append_event(state, event):
    """Best-effort: log failures and carry on."""
    try:
        with state.store.transaction('stats_log') as log:
            log.append(event)
    except Exception as e:
        logger.error(f"Failed to append stats event {event.get('action')} for {event.get('login')}: {e}")
    enqueue(export_stats_event, event)


def record_event(state, login, role, action, phone='', extra=''):
    if not login or not action:
        raise ValidationError('bad_request')

    user = find_user(state, login)
    if user is None:
        raise AuthorizationError('unknown_user')

    event = build_stats_event(login, role or user.get('role'), action, phone, extra)
    append_event(state, event)
    return event


def _day_counter(action):
    action = str(action or '').upper()
    if action in ('CALL', 'ПОЗВОНИТЬ'):
        return 'calls'
    if action == 'АВТО':
        return 'auto'
    if action == 'НДЗ':
        return 'ndz'
    if 'ОТКАЗ' in action or action == 'REFUSE':
        return 'refuse'
    if 'ИВРИТ' in action or 'IVRIT' in action or action == 'HEBREW':
        return 'ivrit'
    if 'КУПАТ' in action:
        return 'kupat'
    if 'ПЕРЕД' in action:
        return 'passed'
    if 'ЗАКР' in action or action == 'FINAL':
        return 'closed'
    return None


def day_stats(state, login, role, date):
    if not is_admin(state, login, role):
        raise AuthorizationError()

    day = date_part(date)
    if not day:
        raise ValidationError('date_required')

    rows = {}

    def row_for(user_login):
        if user_login not in rows:
            rows[user_login] = {'login': user_login, **{key: 0 for key in DAY_COUNTERS}, 'first': '', 'last': ''}
        return rows[user_login]

    for event in _documents(state, 'stats_log'):
        if date_part(event.get('ts')) != day:
            continue
        row = row_for(event.get('login') or 'unknown')
        stamp = time_part(event.get('ts'))
        if not row['first'] or stamp < row['first']:
            row['first'] = stamp
        if not row['last'] or stamp > row['last']:
            row['last'] = stamp

        counter = _day_counter(event.get('action'))
        if counter:
            row[counter] += 1

    for user in load_users(state.store):
        row_for(user.get('login'))

    return {'date': day, 'rows': sorted(rows.values(), key=lambda r: str(r['login']))}
