"""
CRM document models.

Records are stored as plain JSON documents (see call_center.documents); this
module holds the closed vocabularies, the pipeline transition tables and the
builders that give every new record its canonical shape.
"""

from django.db import models

from call_center.utils import now_iso, now_local_str


class Role(models.TextChoices):
    ADMIN = 'admin', 'Admin'
    OPERATOR = 'user', 'Operator'
    TECH = 'tech', 'Technician'
    KUPAT = 'kupat', 'Kupat agent'
    CLOSER = 'closer', 'Closer'


class OrderStatus(models.TextChoices):
    NEW = 'new', 'New'
    RE_WORK = 're-work', 'Re-work'
    RETURN = 'return', 'Returned'
    CLOSER = 'closer', 'With closer'
    FINAL = 'final', 'Final'
    REFUSE = 'refuse', 'Refused'
    # legacy technician-queue markers still present in old data
    WORK = 'work', 'Work (legacy)'
    TECH = 'tech', 'Tech (legacy)'
    TECH_WORK = 'tech_work', 'Tech work (legacy)'


class KupatStatus(models.TextChoices):
    NEW = 'kupat_new', 'Incoming'
    WORK = 'kupat_work', 'In work'
    TO_CLOSER = 'kupat_to_closer', 'To closer'
    FINAL = 'kupat_final', 'Final'
    REFUSE = 'refuse', 'Refused'
    KUPAT_REFUSE = 'kupat_refuse', 'Refused by kupat'


def _values(*members):
    # plain str values, so raw statuses read from documents match directly
    return frozenset(m.value for m in members)


TECH_QUEUE_STATUSES = _values(
    OrderStatus.NEW, OrderStatus.RE_WORK, OrderStatus.RETURN,
    OrderStatus.WORK, OrderStatus.TECH, OrderStatus.TECH_WORK,
)
OPERATOR_COMMENT_STATUSES = _values(OrderStatus.NEW, OrderStatus.RE_WORK, OrderStatus.RETURN)
ORDER_TERMINAL_STATUSES = _values(OrderStatus.FINAL, OrderStatus.REFUSE)

# statuses a technician may set through orders/action
TECH_ACTION_STATUSES = _values(OrderStatus.RETURN, OrderStatus.REFUSE, OrderStatus.CLOSER)

_FROM_TECH_QUEUE = _values(OrderStatus.RE_WORK, OrderStatus.RETURN, OrderStatus.CLOSER, OrderStatus.REFUSE)

ORDER_TRANSITIONS = {
    **{status: _FROM_TECH_QUEUE for status in TECH_QUEUE_STATUSES},
    OrderStatus.CLOSER.value: _values(
        OrderStatus.CLOSER, OrderStatus.FINAL, OrderStatus.REFUSE,
        OrderStatus.RE_WORK, OrderStatus.RETURN,
    ),
    OrderStatus.FINAL.value: frozenset(),
    OrderStatus.REFUSE.value: frozenset(),
}

KUPAT_REFUSALS = _values(KupatStatus.REFUSE, KupatStatus.KUPAT_REFUSE)
KUPAT_TERMINAL_STATUSES = _values(KupatStatus.FINAL) | KUPAT_REFUSALS

# statuses a kupat agent may set through kupat/action
KUPAT_ACTION_STATUSES = _values(KupatStatus.NEW, KupatStatus.WORK, KupatStatus.TO_CLOSER) | KUPAT_REFUSALS

KUPAT_TRANSITIONS = {
    KupatStatus.NEW.value: _values(KupatStatus.NEW, KupatStatus.WORK, KupatStatus.TO_CLOSER) | KUPAT_REFUSALS,
    KupatStatus.WORK.value: _values(KupatStatus.WORK, KupatStatus.TO_CLOSER) | KUPAT_REFUSALS,
    KupatStatus.TO_CLOSER.value: _values(KupatStatus.TO_CLOSER, KupatStatus.WORK, KupatStatus.FINAL) | KUPAT_REFUSALS,
    KupatStatus.FINAL.value: frozenset(),
    KupatStatus.REFUSE.value: frozenset(),
    KupatStatus.KUPAT_REFUSE.value: frozenset(),
}


def parse_status(enum_cls, value):
    """Return the canonical status string, or None when it is not part of the vocabulary."""
    try:
        return enum_cls(str(value or '').strip()).value
    except ValueError:
        return None


def can_transition(table, current, target):
    return target in table.get(current, frozenset())


# ============================================================================
# CALL RESULT VOCABULARY
# ============================================================================

CALL_STATUS_PASSED = 'ПЕРЕДАЛ'
CALL_STATUS_TO_KUPAT = 'НА КУПАТ'
CALL_STATUSES_AUTO = frozenset({'AUTO', 'АВТО'})
CALL_STATUSES_NDZ = frozenset({'НДЗ', 'NDZ'})

EXPORT_SHEET_AUTO = 'AUTO'
EXPORT_SHEET_NDZ = 'НДЗ'


def canonical_call_status(status):
    return str(status or '').strip().upper()


# ============================================================================
# BUILDERS
# ============================================================================

def build_user(login, password, role, balance=0):
    return {
        'login': login,
        'pass': password,
        'role': role,
        'balance': float(balance or 0),
    }


DEFAULT_ADMIN = build_user('admin', 'admin123', Role.ADMIN.value)


def build_call_result(record_id, status, operator, phone, name, note):
    return {
        'id': record_id,
        'status': status,
        'user': operator,
        'phone': phone,
        'name': name,
        'note': note if note is not None else '',
        'time': now_local_str(),
    }


def build_order(record_id, operator, client_name, phone, details, stamp_hand_off=True):
    stamp = now_local_str()
    order = {
        'id': record_id,
        'operator': operator,
        'clientName': client_name or '',
        'phone': phone or '',
        'details': details or '',
        'time': stamp,
        'status': OrderStatus.NEW.value,
        'tech': None,
        'techs': [],
        'closer': None,
        'closers': [],
        'comments': [],
    }
    if stamp_hand_off:
        order['opToTechAt'] = stamp
    return order


def build_kupat_order(record_id, operator, client_name, phone, details, status=KupatStatus.NEW.value, kupat_user=None):
    stamp = now_local_str()
    return {
        'id': record_id,
        'operatorFrom': operator,
        'opToKupatAt': stamp,
        'clientName': client_name or '',
        'phone': phone or '',
        'details': details or '',
        'time': stamp,
        'status': status,
        'kupatUser': kupat_user,
        'closer': None,
        'comments': [],
    }


def build_comment(author, role, text, file_ref=None, file_key='file'):
    comment = {
        'by': author,
        'role': role,
        'text': text,
        'time': now_local_str(),
        'createdAt': now_iso(),
    }
    if file_ref:
        comment[file_key] = file_ref
    return comment


def build_callback(record_id, owner, role, source, source_id, client_name, phone, text, card=None):
    item = {
        'id': record_id,
        'owner': owner,
        'role': role,
        'source': source or '',
        'sourceId': '' if source_id is None else str(source_id),
        'clientName': client_name or '',
        'phone': phone or '',
        'text': text or '',
        'createdAt': now_local_str(),
    }
    if isinstance(card, dict):
        item['card'] = card
    return item


def build_note(record_id, owner, source, order_id, client_name, phone, text, comment, created_at=None, file_ref=None):
    note = {
        'id': record_id,
        'owner': owner,
        'source': source or '',
        'orderId': order_id or None,
        'clientName': client_name or '',
        'phone': phone or '',
        'text': text or '',
        'comment': comment or '',
        'createdAt': created_at or now_iso(),
    }
    if file_ref:
        note['file'] = file_ref
    return note


def build_stats_event(login, role, action, phone='', extra=''):
    return {
        'ts': now_local_str(),
        'login': str(login),
        'role': str(role or ''),
        'action': str(action),
        'phone': str(phone or ''),
        'extra': str(extra)[:500] if extra else '',
    }
