import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone as dt_timezone

from django.conf import settings
from django.utils import timezone


def now_local_str():
    """Display timestamp, e.g. 2024-05-01 14:03:12 in the configured UTC offset."""
    local = timezone.now() + timedelta(hours=settings.DISPLAY_UTC_OFFSET_HOURS)
    return local.strftime('%Y-%m-%d %H:%M:%S')


def now_iso():
    return timezone.now().isoformat()


def parse_iso(value):
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        return None
    if timezone.is_naive(parsed):
        parsed = parsed.replace(tzinfo=dt_timezone.utc)
    return parsed


def date_part(stamp):
    return str(stamp or '')[:10]


def time_part(stamp):
    return str(stamp or '')[11:19]


def next_record_id(records):
    """Millisecond id, bumped past the largest numeric id already present."""
    candidate = int(time.time() * 1000)
    existing = [r.get('id') for r in records if isinstance(r, dict) and isinstance(r.get('id'), int)]
    if existing:
        candidate = max(candidate, max(existing) + 1)
    return candidate


def random_record_id():
    return f"{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def short_record_id():
    return uuid.uuid4().hex[:12]


def same_id(a, b):
    return a is not None and b is not None and str(a) == str(b)


def find_index(records, record_id):
    for idx, record in enumerate(records):
        if isinstance(record, dict) and same_id(record.get('id'), record_id):
            return idx
    return -1


def find_record(records, record_id):
    idx = find_index(records, record_id)
    return records[idx] if idx >= 0 else None


def clean_str(value):
    return '' if value is None else str(value).strip()
