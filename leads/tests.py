"""
Unit tests for leads/utils.py and the document store underneath it

Tests cover:
- Phone normalization
- Phone registry reconciliation and persistence
- Row dealing, reselection and exhaustion
- Dealer state shared between workers
- Lead file parsing
- Document store tolerance and self-healing
- Collection locks
"""

import io
import random

import orjson as json
import pytest
from unittest.mock import patch

from call_center.documents import DocumentStore
from call_center.exceptions import PersistenceError, ServiceBusyError
from call_center.redis import collection_lock
from call_center.state import AppState
from call_center.uploads import UploadStorage
from leads.utils import (
    normalize_phone,
    PhoneRegistry,
    NO_ACTIVE_DATABASE,
    DATABASE_NOT_FOUND,
    NO_AVAILABLE_ROWS,
    parse_lead_rows,
)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def store(tmp_path):
    return DocumentStore(tmp_path / 'data')


@pytest.fixture
def state(store, tmp_path):
    return AppState(store=store, rng=random.Random(7), uploads=UploadStorage(tmp_path / 'uploads')).boot()


def _add_db(state, rows, name='leads.xlsx'):
    return state.dealer.add_database(name, rows)


# ============================================================================
# TEST: normalize_phone
# ============================================================================

class TestNormalizePhone:

    @pytest.mark.parametrize("raw,expected", [
        ("+972501234567", "0501234567"),
        ("972501234567", "0501234567"),
        ("9720501234567", "0501234567"),
        ("0501234567", "0501234567"),
        ("000501234567", "0501234567"),
        ("050-123-4567", "0501234567"),
        ("(050) 123 4567", "0501234567"),
        ("12025550123", "12025550123"),
        ("972", ""),
        ("9720000", ""),
        ("", ""),
        (None, ""),
        ("no digits", ""),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_phone(raw) == expected

    @pytest.mark.parametrize("raw", ["+972501234567", "00501234567", "9720000501", "12025550123", "abc", 501234567])
    def test_idempotent(self, raw):
        once = normalize_phone(raw)
        assert normalize_phone(once) == once

    def test_israeli_formats_share_a_key(self):
        assert normalize_phone("+972501234567") == normalize_phone("0501234567") == "0501234567"


# ============================================================================
# TEST: PhoneRegistry
# ============================================================================

class TestPhoneRegistry:

    def test_reconcile_unions_ledger_and_history(self, store):
        store.save('used_phones', ['0501111111', '+972502222222'])
        store.save('history', [{'id': 1, 'phone': '050-333-3333'}])
        store.save('orders', [{'id': 2, 'phone': '972504444444'}, 'garbage'])
        store.save('kupat', [{'id': 3, 'phone': '0505555555'}, {'id': 4, 'phone': ''}])

        registry = PhoneRegistry(store)
        used = registry.reconcile()

        assert used == {'0501111111', '0502222222', '0503333333', '0504444444', '0505555555'}
        assert '' not in registry

    def test_reconcile_with_nothing_stored(self, store):
        registry = PhoneRegistry(store)
        assert registry.reconcile() == set()
        assert len(registry) == 0

    def test_mark_used_persists_whole_set(self, store):
        registry = PhoneRegistry(store)
        registry.mark_used('0501111111')
        registry.mark_raw('+972502222222')

        assert registry.is_used('0502222222')
        assert sorted(store.load('used_phones', [])) == ['0501111111', '0502222222']

    def test_mark_used_is_idempotent(self, store):
        registry = PhoneRegistry(store)
        registry.mark_used('0501111111')
        registry.mark_used('0501111111')

        assert store.load('used_phones', []) == ['0501111111']
        assert len(registry) == 1

    def test_mark_used_ignores_empty_key(self, store):
        registry = PhoneRegistry(store)
        assert registry.mark_used('') is False
        assert registry.mark_raw('---') is False
        assert not store.path_for('used_phones').exists()

    def test_persist_merges_numbers_from_other_processes(self, store):
        registry = PhoneRegistry(store)
        store.save('used_phones', ['0509999999'])

        registry.mark_used('0501111111')

        assert registry.is_used('0509999999')
        assert set(store.load('used_phones', [])) == {'0501111111', '0509999999'}

    def test_persist_failure_is_swallowed(self, store):
        registry = PhoneRegistry(store)

        with patch.object(store, 'save', side_effect=PersistenceError()):
            assert registry.mark_used('0501111111') is True

        assert registry.is_used('0501111111')

    def test_persist_busy_is_swallowed(self, store, mock_conn):
        registry = PhoneRegistry(store)
        mock_conn.lock.return_value.acquire.return_value = False

        assert registry.mark_used('0501111111') is True
        assert registry.is_used('0501111111')


# ============================================================================
# TEST: RowDealer
# ============================================================================

class TestRowDealer:

    def test_no_active_database(self, state):
        result = state.dealer.deal_row()
        assert result['error'] == NO_ACTIVE_DATABASE
        assert result['message']

    def test_database_not_found(self, state):
        state.dealer.select_active(12345)
        assert state.dealer.deal_row()['error'] == DATABASE_NOT_FOUND

    def test_deal_marks_phone_used(self, state):
        db = _add_db(state, [['Dana', '0501111111'], ['Eli', '0502222222']])
        state.dealer.select_active(db['id'])

        row = state.dealer.deal_row()['row']

        assert state.registry.is_used(normalize_phone(row[1]))
        assert normalize_phone(row[1]) in state.store.load('used_phones', [])

    def test_no_phone_dealt_twice(self, state):
        db = _add_db(state, [
            ['A', '0501111111'],
            ['B', '+972501111111'],
            ['C', '0502222222'],
            ['D', '0503333333'],
        ])
        state.dealer.select_active(db['id'])

        phones = []
        while True:
            result = state.dealer.deal_row()
            if 'error' in result:
                break
            phones.append(normalize_phone(result['row'][1]))

        assert sorted(phones) == ['0501111111', '0502222222', '0503333333']
        assert result['error'] == NO_AVAILABLE_ROWS

    def test_skips_rows_without_phone_and_used_phones(self, state):
        state.registry.mark_used('0501111111')
        db = _add_db(state, [['A', '0501111111'], ['B', ''], ['C'], ['D', '0502222222']])
        state.dealer.select_active(db['id'])

        assert state.dealer.deal_row()['row'] == ['D', '0502222222']
        assert state.dealer.deal_row()['error'] == NO_AVAILABLE_ROWS

    def test_reselection_clears_dealt_indices(self, state):
        db = _add_db(state, [['A', '0501111111']])
        state.dealer.select_active(db['id'], allow_duplicates=True)

        assert state.dealer.deal_row()['row'] == ['A', '0501111111']
        assert state.dealer.deal_row()['error'] == NO_AVAILABLE_ROWS

        state.dealer.select_active(db['id'], allow_duplicates=True)

        assert state.dealer.used_indices == set()
        assert state.dealer.deal_row()['row'] == ['A', '0501111111']

    def test_reselection_without_duplicates_keeps_registry(self, state):
        db = _add_db(state, [['A', '0501111111']])
        state.dealer.select_active(db['id'])
        state.dealer.deal_row()

        state.dealer.select_active(db['id'])

        assert state.dealer.deal_row()['error'] == NO_AVAILABLE_ROWS

    def test_select_active_persists_flag(self, state):
        db = _add_db(state, [['A', '0501111111']])

        assert state.dealer.select_active(db['id'], allow_duplicates=True) is True

        assert state.dealer.list_databases() == [{'id': db['id'], 'name': 'leads.xlsx', 'allowDuplicates': True}]

    def test_select_unknown_database_still_clears_indices(self, state, mock_conn):
        mock_conn.sadd('DEALT_INDICES', 1, 2)

        state.dealer.select_active('missing')

        assert state.dealer.used_indices == set()
        assert state.dealer.active_db_id == 'missing'

    def test_dealt_indices_never_written_to_store(self, state, store):
        db = _add_db(state, [['A', '0501111111'], ['B', '0502222222']])
        state.dealer.select_active(db['id'])
        state.dealer.deal_row()

        stored_files = sorted(path.name for path in store.path_for('databases').parent.iterdir())
        assert stored_files == ['databases.json', 'used_phones.json']
        assert store.load('databases', [])[0] == {
            'id': db['id'], 'name': 'leads.xlsx', 'rows': db['rows'], 'allowDuplicates': False,
        }

    def test_deal_holds_dealer_lock(self, state, mock_conn):
        db = _add_db(state, [['A', '0501111111']])
        state.dealer.select_active(db['id'])
        mock_conn.lock.reset_mock()

        state.dealer.deal_row()

        lock_keys = [call[0][0] for call in mock_conn.lock.call_args_list]
        assert lock_keys[0] == 'COLLECTION_LOCK:dealer'

    def test_busy_dealer_lock_raises(self, state, mock_conn):
        db = _add_db(state, [['A', '0501111111']])
        state.dealer.select_active(db['id'])
        mock_conn.lock.return_value.acquire.return_value = False

        with pytest.raises(ServiceBusyError):
            state.dealer.deal_row()

        assert not state.registry.is_used('0501111111')

    def test_add_database_ids_are_unique(self, state):
        first = _add_db(state, [['A', '1']])
        second = _add_db(state, [['B', '2']])
        assert first['id'] != second['id']


# ============================================================================
# TEST: dealer state shared between workers
# ============================================================================

class TestSharedDealerState:

    @pytest.fixture
    def other_worker(self, store, tmp_path):
        return AppState(store=store, rng=random.Random(11), uploads=UploadStorage(tmp_path / 'uploads')).boot()

    def test_selection_visible_to_other_worker(self, state, other_worker):
        db = _add_db(state, [['A', '0501111111']])
        state.dealer.select_active(db['id'], allow_duplicates=True)

        assert other_worker.dealer.active_db_id == db['id']
        assert other_worker.dealer.allow_duplicates is True

    def test_other_worker_skips_rows_already_dealt(self, state, other_worker):
        db = _add_db(state, [['A', '0501111111']])
        state.dealer.select_active(db['id'], allow_duplicates=True)

        assert state.dealer.deal_row()['row'] == ['A', '0501111111']
        assert other_worker.dealer.deal_row()['error'] == NO_AVAILABLE_ROWS

    def test_reselection_by_other_worker_still_refuses_issued_phone(self, state, other_worker):
        db = _add_db(state, [['A', '0501111111'], ['B', '0502222222']])
        state.dealer.select_active(db['id'])
        first = state.dealer.deal_row()['row']

        other_worker.dealer.select_active(db['id'])
        second = other_worker.dealer.deal_row()['row']

        assert first != second
        assert state.dealer.deal_row()['error'] == NO_AVAILABLE_ROWS
        assert other_worker.dealer.deal_row()['error'] == NO_AVAILABLE_ROWS

    def test_reselection_by_other_worker_clears_dealt_indices(self, state, other_worker):
        db = _add_db(state, [['A', '0501111111']])
        state.dealer.select_active(db['id'], allow_duplicates=True)
        state.dealer.deal_row()

        other_worker.dealer.select_active(db['id'], allow_duplicates=True)

        assert state.dealer.used_indices == set()
        assert state.dealer.deal_row()['row'] == ['A', '0501111111']

    def test_phone_marked_by_one_worker_is_used_everywhere(self, state, other_worker):
        state.registry.mark_raw('+972501111111')

        assert other_worker.registry.is_used('0501111111')
        assert len(other_worker.registry) == 1

    def test_restart_keeps_selection(self, state, store):
        db = _add_db(state, [['A', '0501111111']])
        state.dealer.select_active(db['id'])
        state.dealer.deal_row()

        restarted = AppState(store=store).boot()

        assert restarted.dealer.active_db_id == db['id']
        assert restarted.dealer.used_indices == {0}
        assert restarted.registry.is_used('0501111111')

    def test_reconcile_refills_flushed_registry_from_ledger(self, state, store, mock_conn):
        state.registry.mark_used('0501111111')
        mock_conn.delete('USED_PHONES')

        restarted = AppState(store=store).boot()

        assert restarted.registry.is_used('0501111111')


# ============================================================================
# TEST: parse_lead_rows
# ============================================================================

class TestParseLeadRows:

    def test_csv_rows(self):
        upload = io.BytesIO("Dana,0501111111,Haifa\n,0502222222\nEli,0503333333,\n".encode('utf-8'))
        upload.name = 'leads.csv'

        rows = parse_lead_rows(upload)

        assert rows == [['Dana', '0501111111', 'Haifa'], ['Eli', '0503333333']]

    def test_xlsx_rows(self):
        from openpyxl import Workbook

        workbook = Workbook()
        sheet = workbook.active
        sheet.append(['Dana', '0501111111'])
        sheet.append([None, '0502222222'])
        sheet.append(['Eli', '0503333333', 'note'])
        buffer = io.BytesIO()
        workbook.save(buffer)
        buffer.name = 'leads.xlsx'

        rows = parse_lead_rows(buffer)

        assert rows == [['Dana', '0501111111'], ['Eli', '0503333333', 'note']]


# ============================================================================
# TEST: DocumentStore
# ============================================================================

class TestDocumentStore:

    def test_missing_collection_returns_default(self, store):
        assert store.load('orders', []) == []

    def test_corrupt_document_returns_default(self, store):
        path = store.path_for('orders')
        path.parent.mkdir(parents=True)
        path.write_text('{not json')

        assert store.load('orders', []) == []

    def test_wrong_shape_returns_default(self, store):
        store.save('orders', {'id': 1})
        assert store.load('orders', []) == []

    def test_unknown_collection(self, store):
        with pytest.raises(ValueError):
            store.path_for('payments')

    def test_save_self_heals_directory(self, store):
        path = store.path_for('orders')
        (path / 'nested').mkdir(parents=True)

        store.save('orders', [{'id': 1}])

        assert path.is_file()
        assert json.loads(path.read_bytes()) == [{'id': 1}]

    def test_save_failure_propagates(self, store):
        with patch('call_center.documents.Path.write_bytes', side_effect=OSError('disk full')):
            with pytest.raises(PersistenceError):
                store.save('orders', [])

    def test_transaction_persists_on_success(self, store):
        with store.transaction('orders') as orders:
            orders.append({'id': 1})
        assert store.load('orders', []) == [{'id': 1}]

    def test_transaction_skips_save_on_error(self, store):
        store.save('orders', [{'id': 1}])

        with pytest.raises(RuntimeError):
            with store.transaction('orders') as orders:
                orders.append({'id': 2})
                raise RuntimeError('rejected')

        assert store.load('orders', []) == [{'id': 1}]


# ============================================================================
# TEST: collection_lock
# ============================================================================

class TestCollectionLock:

    def test_lock_released_when_owned(self, mock_conn):
        with collection_lock('orders'):
            pass

        mock_conn.lock.assert_called_once()
        assert mock_conn.lock.call_args[0][0] == 'COLLECTION_LOCK:orders'
        mock_conn.lock.return_value.release.assert_called_once()

    def test_busy_lock_raises(self, mock_conn):
        mock_conn.lock.return_value.acquire.return_value = False

        with pytest.raises(ServiceBusyError):
            with collection_lock('orders'):
                pass

        mock_conn.lock.return_value.release.assert_not_called()

    def test_lock_not_released_when_expired(self, mock_conn):
        mock_conn.lock.return_value.owned.return_value = False

        with collection_lock('orders'):
            pass

        mock_conn.lock.return_value.release.assert_not_called()
