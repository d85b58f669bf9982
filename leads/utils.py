import logging
import random
import re

import orjson as json
import pandas as pd

from call_center import redis as locks
from call_center.exceptions import PersistenceError, ServiceBusyError
from call_center.utils import next_record_id, same_id, find_record
from .models import PHONE_COLUMN, build_database

logger = logging.getLogger(__name__)

COUNTRY_CODE = '972'

# Soft dealer errors: shown inline to the operator, never raised
NO_ACTIVE_DATABASE = 'no_active_database'
DATABASE_NOT_FOUND = 'database_not_found'
NO_AVAILABLE_ROWS = 'no_available_rows'

DEALER_MESSAGES = {
    NO_ACTIVE_DATABASE: 'Админ не выбрал базу!',
    DATABASE_NOT_FOUND: 'База не найдена',
    NO_AVAILABLE_ROWS: 'Нет новых номеров (все уже были или база закончилась)',
}


def normalize_phone(raw):
    """
    Canonical phone key.

    972XXXXXXXXX / 9720XXXXXXXXX / 0XXXXXXXXX -> 0XXXXXXXXX, other formats keep
    their digits. Returns '' for anything without a usable number.
    """
    digits = re.sub(r'\D', '', str(raw if raw is not None else ''))
    if not digits:
        return ''

    if digits.startswith(COUNTRY_CODE):
        local = digits[len(COUNTRY_CODE):].lstrip('0')
        return f"0{local}" if local else ''

    if digits.startswith('0'):
        return '0' + digits.lstrip('0')

    return digits


# ============================================================================
# PHONE REGISTRY
# ============================================================================

class PhoneRegistry:
    """
    Ledger of phone numbers already issued to operators.

    The live set is a Redis set shared by every worker. reconcile() seeds it
    from the persisted ledger plus every phone found in call results, orders
    and kupat orders, so a stale or missing ledger heals itself from
    historical data. used_phones.json is only the durable mirror.
    """

    def __init__(self, store):
        self.store = store

    def __contains__(self, key):
        return self.is_used(key)

    def __len__(self):
        return locks.conn.scard(locks.USED_PHONES_REDIS_KEY)

    def reconcile(self):
        used = {normalize_phone(p) for p in self.store.load('used_phones', [])}
        for collection in ('history', 'orders', 'kupat'):
            for record in self.store.load(collection, []):
                if isinstance(record, dict):
                    used.add(normalize_phone(record.get('phone')))
        used.discard('')

        if used:
            locks.conn.sadd(locks.USED_PHONES_REDIS_KEY, *used)
        used = self.snapshot()
        logger.info(f"Phone registry reconciled with {len(used)} numbers")
        return used

    def is_used(self, key):
        return bool(key) and bool(locks.conn.sismember(locks.USED_PHONES_REDIS_KEY, key))

    def mark_used(self, key):
        if not key:
            return False
        locks.conn.sadd(locks.USED_PHONES_REDIS_KEY, key)
        self.persist()
        return True

    def mark_raw(self, raw_phone):
        return self.mark_used(normalize_phone(raw_phone))

    def persist(self):
        # at-least-effort: a failed ledger write never fails the caller
        try:
            with self.store.transaction('used_phones') as ledger:
                # numbers written by an older deployment may only be on disk
                on_disk = {normalize_phone(p) for p in ledger}
                on_disk.discard('')
                if on_disk:
                    locks.conn.sadd(locks.USED_PHONES_REDIS_KEY, *on_disk)
                ledger[:] = sorted(on_disk | self.snapshot())
        except (PersistenceError, ServiceBusyError) as e:
            logger.error(f"Failed to persist used phones ledger: {e}")
        except Exception as e:
            logger.exception(f"Unexpected error persisting used phones ledger: {e}")

    def snapshot(self):
        return set(locks.conn.smembers(locks.USED_PHONES_REDIS_KEY))


# ============================================================================
# ROW DEALER
# ============================================================================

class RowDealer:
    """
    Deals unused rows of the active lead database to operators.

    The active selection and the indices dealt since it was made live in
    Redis so every worker deals from the same selection. Dealt indices are
    cleared on each selection and never written to the document store.
    """

    def __init__(self, store, registry, rng=None):
        self.store = store
        self.registry = registry
        self.rng = rng or random.Random()

    @property
    def selection(self):
        raw = locks.conn.get(locks.ACTIVE_DATABASE_REDIS_KEY)
        if not raw:
            return {'id': None, 'allowDuplicates': False}
        return json.loads(raw)

    @property
    def active_db_id(self):
        return self.selection.get('id')

    @property
    def allow_duplicates(self):
        return bool(self.selection.get('allowDuplicates'))

    @property
    def used_indices(self):
        return {int(idx) for idx in locks.conn.smembers(locks.DEALT_INDICES_REDIS_KEY)}

    def list_databases(self):
        return [
            {'id': db.get('id'), 'name': db.get('name'), 'allowDuplicates': bool(db.get('allowDuplicates'))}
            for db in self.store.load('databases', [])
            if isinstance(db, dict)
        ]

    def select_active(self, db_id, allow_duplicates=False):
        allow_duplicates = bool(allow_duplicates)

        with locks.collection_lock(locks.DEALER_LOCK_NAME):
            locks.conn.set(
                locks.ACTIVE_DATABASE_REDIS_KEY,
                json.dumps({'id': db_id, 'allowDuplicates': allow_duplicates})
            )
            locks.conn.delete(locks.DEALT_INDICES_REDIS_KEY)

            with self.store.transaction('databases') as databases:
                db = find_record(databases, db_id)
                if db is not None:
                    db['allowDuplicates'] = allow_duplicates

        logger.info(f"Active database set to {db_id} (allowDuplicates={allow_duplicates})")
        return allow_duplicates

    def candidate_indices(self, rows, used_indices=None, allow_duplicates=None, used_phones=None):
        if used_indices is None:
            used_indices = self.used_indices
        if allow_duplicates is None:
            allow_duplicates = self.allow_duplicates
        if used_phones is None and not allow_duplicates:
            used_phones = self.registry.snapshot()

        candidates = []
        for idx, row in enumerate(rows):
            if idx in used_indices:
                continue
            phone = normalize_phone(row[PHONE_COLUMN] if isinstance(row, list) and len(row) > PHONE_COLUMN else None)
            if not phone:
                continue
            if not allow_duplicates and phone in used_phones:
                continue  # already issued somewhere in the system
            candidates.append(idx)
        return candidates

    def deal_row(self):
        """Return {'row': [...]} or a soft {'error': code, 'message': ...} payload."""
        # check, pick and mark must not interleave with another worker's deal
        with locks.collection_lock(locks.DEALER_LOCK_NAME):
            selection = self.selection
            db_id = selection.get('id')
            if not db_id:
                return _dealer_error(NO_ACTIVE_DATABASE)

            db = next(
                (d for d in self.store.load('databases', []) if isinstance(d, dict) and same_id(d.get('id'), db_id)),
                None
            )
            if db is None:
                return _dealer_error(DATABASE_NOT_FOUND)

            rows = db.get('rows') or []
            candidates = self.candidate_indices(
                rows,
                used_indices=self.used_indices,
                allow_duplicates=bool(selection.get('allowDuplicates')),
            )
            if not candidates:
                return _dealer_error(NO_AVAILABLE_ROWS)

            # random pick so concurrent operators are not all steered to the first free rows
            idx = self.rng.choice(candidates)
            locks.conn.sadd(locks.DEALT_INDICES_REDIS_KEY, idx)

            chosen = rows[idx]
            self.registry.mark_raw(chosen[PHONE_COLUMN])
        return {'row': chosen}

    def add_database(self, name, rows):
        with self.store.transaction('databases') as databases:
            record = build_database(next_record_id(databases), name, rows)
            databases.append(record)
        logger.info(f"Lead database {name!r} uploaded with {len(record['rows'])} rows")
        return record


def _dealer_error(code):
    return {'error': code, 'message': DEALER_MESSAGES[code]}


# ============================================================================
# LEAD FILE PARSING
# ============================================================================

def parse_lead_rows(uploaded_file):
    """
    Read the first sheet of an xlsx/xls file (or a csv) into header-less rows.

    Empty cells become '' and rows whose first cell is empty are dropped.
    """
    name = (getattr(uploaded_file, 'name', '') or '').lower()
    if hasattr(uploaded_file, 'seek'):
        uploaded_file.seek(0)

    if name.endswith('.csv'):
        frame = pd.read_csv(uploaded_file, header=None, dtype=str, keep_default_na=False)
    else:
        frame = pd.read_excel(uploaded_file, sheet_name=0, header=None, dtype=str)

    frame = frame.fillna('')
    rows = []
    for values in frame.itertuples(index=False, name=None):
        row = [str(v).strip() for v in values]
        while row and row[-1] == '':
            row.pop()
        if row and row[0]:
            rows.append(row)
    return rows
