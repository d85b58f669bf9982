"""
Role capability policy.

Every role / ownership check of the API goes through can_perform(), so the
rules can be read (and tested) in one place, independent of HTTP.
"""

from call_center.exceptions import AuthorizationError
from .models import (
    Role, OrderStatus, OPERATOR_COMMENT_STATUSES, ORDER_TERMINAL_STATUSES,
)
from .utils import assignee_list

ADMIN = Role.ADMIN.value
OPERATOR = Role.OPERATOR.value
TECH = Role.TECH.value
KUPAT = Role.KUPAT.value
CLOSER = Role.CLOSER.value

# actions decided by role alone
ROLE_GRANTS = {
    'order.create_direct': {OPERATOR, TECH, CLOSER, ADMIN},
    'order.to_tech': {OPERATOR, TECH, KUPAT, CLOSER, ADMIN},
    'order.action': {TECH, ADMIN},
    'order.assign_tech': {TECH, ADMIN},
    'order.assign_closer': {CLOSER, ADMIN},
    'order.final': {CLOSER, ADMIN},
    'attach_file': {TECH, CLOSER, ADMIN},
    'kupat.action': {KUPAT, ADMIN},
    'kupat.assign_closer': {CLOSER, ADMIN},
    'kupat.final': {CLOSER, ADMIN},
    'callback.add': {OPERATOR, KUPAT, TECH, ADMIN},
    'callback.transfer_tech': {OPERATOR, ADMIN},
    'callback.transfer_closer': {KUPAT, ADMIN},
    'clients.view': {OPERATOR, ADMIN},
    'call_logs.view': {ADMIN},
    'item.delete': {ADMIN},
    'users.manage': {ADMIN},
    'database.manage': {ADMIN},
}


def _can_comment_order(role, login, order):
    status = order.get('status')
    if role == ADMIN:
        return True
    if role == OPERATOR:
        return status in OPERATOR_COMMENT_STATUSES
    if role == TECH:
        return status not in ORDER_TERMINAL_STATUSES
    if role == CLOSER:
        return (
            status in (OrderStatus.CLOSER.value, OrderStatus.FINAL.value)
            or (bool(login) and login in assignee_list(order, 'closer'))
        )
    return False


def _can_delete_order(role, login, order):
    if role == ADMIN:
        return True
    return role == TECH and bool(login) and login in assignee_list(order, 'tech')


def _can_comment_kupat(role, login, order):
    if role == ADMIN:
        return True
    return role == KUPAT and bool(login) and order.get('kupatUser') == login


RECORD_RULES = {
    'order.comment': _can_comment_order,
    'order.delete': _can_delete_order,
    'kupat.comment': _can_comment_kupat,
}


def can_perform(role, action, login=None, record=None):
    role = str(role or '')
    if action in RECORD_RULES:
        if record is None:
            return False
        return RECORD_RULES[action](role, login, record)
    try:
        return role in ROLE_GRANTS[action]
    except KeyError:
        raise ValueError(f"Unknown action: {action}")


def require(role, action, login=None, record=None, code='forbidden'):
    if not can_perform(role, action, login=login, record=record):
        raise AuthorizationError(code)
