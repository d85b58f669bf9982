from datetime import timedelta

from django.conf import settings
from django.utils import timezone

from call_center.exceptions import AuthorizationError, NotFoundError
from call_center.utils import clean_str, parse_iso, find_index, find_record

# slot -> (list field, primary mirror field)
ASSIGNEE_SLOTS = {
    'tech': ('techs', 'tech'),
    'closer': ('closers', 'closer'),
}


def assignee_list(order, slot):
    """
    Ordered, de-duplicated assignees of one slot.

    Legacy records only carry the singular field; the list is derived from it.
    """
    list_field, primary_field = ASSIGNEE_SLOTS[slot]
    raw = order.get(list_field)
    if not isinstance(raw, list):
        raw = [order.get(primary_field)]

    names = []
    for value in raw:
        name = clean_str(value)
        if name and name not in names:
            names.append(name)
    return names


def _store_assignees(order, slot, names):
    list_field, primary_field = ASSIGNEE_SLOTS[slot]
    order[list_field] = names
    order[primary_field] = names[0] if names else None


def normalize_assignees(order):
    """Upgrade both slots in place so list and mirror agree."""
    for slot in ASSIGNEE_SLOTS:
        _store_assignees(order, slot, assignee_list(order, slot))
    return order


def with_assignee_lists(order):
    """Read-only copy carrying normalized techs / closers lists."""
    return normalize_assignees(dict(order))


def add_assignee(order, slot, name):
    name = clean_str(name)
    names = assignee_list(order, slot)
    if name and name not in names:
        names.append(name)
    _store_assignees(order, slot, names)
    return names


def promote_assignee(order, slot, name):
    """Make name the primary assignee of the slot, keeping the others after it."""
    name = clean_str(name)
    names = [n for n in assignee_list(order, slot) if n != name]
    if name:
        names.insert(0, name)
    _store_assignees(order, slot, names)
    return names


def is_duplicate_comment(comments, author, role, text, file_ref, file_key='file', window=None):
    """
    True when the same author/role posted the same text and attachment within
    the dedup window. Retries and double submits land here.
    """
    if window is None:
        window = settings.COMMENT_DEDUP_WINDOW_SECONDS
    now = timezone.now()
    for comment in comments:
        if not isinstance(comment, dict):
            continue
        if (
            clean_str(comment.get('by')) != clean_str(author)
            or clean_str(comment.get('role')) != clean_str(role)
            or str(comment.get('text') or '') != text
            or str(comment.get(file_key) or '') != str(file_ref or '')
        ):
            continue
        created = parse_iso(comment.get('createdAt'))
        if created is not None and now - created < timedelta(seconds=window):
            return True
    return False


def get_record_or_404(records, record_id):
    record = find_record(records, record_id)
    if record is None:
        raise NotFoundError()
    return record


def owned_index(records, record_id, login):
    """Index of a record that must exist and belong to login."""
    idx = find_index(records, record_id)
    if idx < 0:
        raise NotFoundError()
    if records[idx].get('owner') != login:
        raise AuthorizationError()
    return idx
