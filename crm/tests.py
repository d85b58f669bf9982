"""
Unit tests for the crm app

Tests cover:
- Call result routing and export fan-out
- Export workbook creation under the export lock
- Order lifecycle, assignment lists and comment rules
- Kupat lifecycle
- Callback queue transfers
- Notes and their attachments
- Users, statistics and the event log
- The role policy
- HTTP views end to end
"""

import random
from datetime import timedelta

import pytest
from django.core.files.uploadedfile import SimpleUploadedFile
from django.test.client import BOUNDARY, MULTIPART_CONTENT, encode_multipart
from django.utils import timezone
from unittest.mock import patch

from call_center.documents import DocumentStore
from call_center.exceptions import (
    AuthenticationError, AuthorizationError, NotFoundError, ServiceBusyError, TransitionError, ValidationError,
)
from call_center.state import AppState
from call_center.uploads import UploadStorage
from crm import callbacks, calls, exports, kupat, notes, orders, stats, tasks, users
from crm.models import OrderStatus, KupatStatus
from crm.permissions import can_perform
from crm.utils import add_assignee, assignee_list, is_duplicate_comment, normalize_assignees


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture(autouse=True)
def local_dirs(settings, tmp_path):
    """Exports run inline and every file lands under tmp_path"""
    settings.EXPORTS_ASYNC = False
    settings.DATA_DIR = tmp_path / 'data'
    settings.UPLOAD_DIR = tmp_path / 'uploads'
    settings.EXPORT_DIR = tmp_path / 'exports'
    return tmp_path


@pytest.fixture
def state(tmp_path):
    store = DocumentStore(tmp_path / 'data')
    store.save('users', [
        {'login': 'admin', 'pass': 'admin123', 'role': 'admin', 'balance': 0},
        {'login': 'alice', 'pass': 'a', 'role': 'user', 'balance': 10},
        {'login': 'bob', 'pass': 'b', 'role': 'tech', 'balance': 0},
        {'login': 'carl', 'pass': 'c', 'role': 'closer', 'balance': 0},
        {'login': 'kira', 'pass': 'k', 'role': 'kupat', 'balance': 0},
    ])
    return AppState(store=store, rng=random.Random(3), uploads=UploadStorage(tmp_path / 'uploads')).boot()


@pytest.fixture
def upload_file(state):
    """Write a stored upload and return its /uploads/ reference"""
    def _make(name='photo.png', content=b'data'):
        state.uploads.base_dir.mkdir(parents=True, exist_ok=True)
        (state.uploads.base_dir / name).write_bytes(content)
        return f"/uploads/{name}"
    return _make


def _passed_order(state, operator='alice', phone='0501112222'):
    return calls.record_call_result(state, 'ПЕРЕДАЛ', operator, phone, 'Dana', 'needs a visit')['order']


def _stored(state, collection, record_id):
    return next(r for r in state.store.load(collection, []) if str(r['id']) == str(record_id))


def _stored_order(state, order_id):
    return _stored(state, 'orders', order_id)


def _order_in(state, status, **fields):
    order = _passed_order(state)
    with state.store.transaction('orders') as stored:
        for record in stored:
            if record['id'] == order['id']:
                record['status'] = status
                record.update(fields)
    return _stored_order(state, order['id'])


def _kupat_order(state, operator='alice', phone='0507778888'):
    return calls.record_call_result(state, 'НА КУПАТ', operator, phone, 'Rina', 'pension')['kupatOrder']


# ============================================================================
# TEST: record_call_result
# ============================================================================

class TestCallRouter:

    def test_passed_creates_one_order(self, state):
        result = calls.record_call_result(state, 'ПЕРЕДАЛ', 'alice', '0501112222', 'Dana', None)

        stored = state.store.load('orders', [])
        assert len(stored) == 1
        assert stored[0]['status'] == OrderStatus.NEW.value
        assert stored[0]['operator'] == 'alice'
        assert stored[0]['opToTechAt']
        assert stored[0]['details'] == ''
        assert result['kupatOrder'] is None
        assert state.registry.is_used('0501112222')
        assert len(state.store.load('history', [])) == 1

    def test_label_matching_is_case_insensitive(self, state):
        calls.record_call_result(state, ' передал ', 'alice', '0501112222', 'Dana', '')
        assert len(state.store.load('orders', [])) == 1

    def test_to_kupat_creates_one_kupat_order_and_export_row(self, state):
        calls.record_call_result(state, 'НА КУПАТ', 'alice', '+972507778888', 'Rina', 'pension')

        stored = state.store.load('kupat', [])
        assert len(stored) == 1
        assert stored[0]['status'] == KupatStatus.NEW.value
        assert stored[0]['operatorFrom'] == 'alice'
        assert stored[0]['opToKupatAt']
        assert state.store.load('orders', []) == []
        assert state.registry.is_used('0507778888')

        rows = exports.read_rows(exports.KUPAT_FILE, exports.KUPAT_SHEET)
        assert rows[0] == exports.KUPAT_HEADERS
        assert rows[1][2:] == ['alice', 'Rina', '+972507778888', 'pension']

    @pytest.mark.parametrize("status,sheet", [
        ('AUTO', 'AUTO'),
        ('авто', 'AUTO'),
        ('НДЗ', 'НДЗ'),
        ('ndz', 'НДЗ'),
    ])
    def test_auto_and_ndz_rows_without_pipeline(self, state, status, sheet):
        calls.record_call_result(state, status, 'alice', '0501112222', 'Dana', 'later')

        rows = exports.read_rows(exports.AUTO_NDZ_FILE, sheet)
        assert len(rows) == 2
        assert rows[1][2] == 'alice'
        assert rows[1][9] == 'later'
        assert state.store.load('orders', []) == []
        assert state.store.load('kupat', []) == []

    def test_other_status_only_logged(self, state):
        result = calls.record_call_result(state, 'НЕ ОТВЕТИЛ', 'alice', '0501112222', 'Dana', '')

        assert result['order'] is None and result['kupatOrder'] is None
        assert len(state.store.load('history', [])) == 1
        assert state.store.load('orders', []) == []
        assert state.store.load('kupat', []) == []

    def test_export_failure_does_not_affect_call_result(self, state):
        with patch('crm.exports.append_auto_ndz', side_effect=OSError('locked workbook')):
            result = calls.record_call_result(state, 'AUTO', 'alice', '0501112222', 'Dana', '')

        assert result['callResult']['status'] == 'AUTO'
        assert len(state.store.load('history', [])) == 1


# ============================================================================
# TEST: exports
# ============================================================================

class TestExports:

    def test_first_row_creates_every_ledger_sheet(self, state):
        calls.record_call_result(state, 'AUTO', 'alice', '0501112222', 'Dana', '')

        assert len(exports.read_rows(exports.AUTO_NDZ_FILE, 'AUTO')) == 2
        assert exports.read_rows(exports.AUTO_NDZ_FILE, 'НДЗ') == [exports.AUTO_NDZ_HEADERS]

    def test_ensure_holds_export_lock(self, mock_conn):
        path = exports.ensure_kupat_workbook()

        assert path.is_file()
        assert mock_conn.lock.call_args[0][0] == 'COLLECTION_LOCK:export:export_kupat.xlsx'
        mock_conn.lock.return_value.release.assert_called_once()

    def test_ensure_keeps_existing_rows(self):
        exports.append_kupat({'operator': 'alice', 'name': 'Rina', 'phone': '0507778888', 'note': ''})

        exports.ensure_kupat_workbook()

        assert len(exports.read_rows(exports.KUPAT_FILE, exports.KUPAT_SHEET)) == 2

    def test_ensure_busy_lock_creates_nothing(self, mock_conn):
        mock_conn.lock.return_value.acquire.return_value = False

        with pytest.raises(ServiceBusyError):
            exports.ensure_auto_ndz_workbook()

        assert not exports.workbook_path(exports.AUTO_NDZ_FILE).exists()


# ============================================================================
# TEST: enqueue
# ============================================================================

class TestEnqueue:

    def test_async_hands_off_to_worker(self, settings):
        settings.EXPORTS_ASYNC = True
        with patch.object(tasks.export_kupat_row, 'delay') as mock_delay:
            assert tasks.enqueue(tasks.export_kupat_row, {'phone': '1'}) is True
        mock_delay.assert_called_once_with({'phone': '1'})

    def test_broker_failure_is_swallowed(self, settings):
        settings.EXPORTS_ASYNC = True
        with patch.object(tasks.export_kupat_row, 'delay', side_effect=ConnectionError('no broker')):
            assert tasks.enqueue(tasks.export_kupat_row, {'phone': '1'}) is False


# ============================================================================
# TEST: order lifecycle
# ============================================================================

class TestOrderLifecycle:

    def test_end_to_end_alice_bob_carl(self, state):
        order = _passed_order(state, 'alice', '0501112222')
        assert order['status'] == 'new'
        assert state.registry.is_used('0501112222')

        orders.order_action(state, order['id'], 'tech', 'closer', tech_login='bob')
        stored = _stored_order(state, order['id'])
        assert stored['status'] == 'closer'
        assert stored['techs'] == ['bob']
        assert stored['tech'] == 'bob'
        assert stored['techToCloserAt']

        orders.final(state, order['id'], 'closer', 'carl', color='green', text='done')
        stored = _stored_order(state, order['id'])
        assert stored['status'] == 'final'
        assert stored['closer'] == 'carl'
        assert stored['closers'][0] == 'carl'
        assert stored['finalColor'] == 'green'
        assert stored['finalText'] == 'done'

    def test_action_requires_tech_or_admin(self, state):
        order = _passed_order(state)
        with pytest.raises(AuthorizationError):
            orders.order_action(state, order['id'], 'user', 'closer', tech_login='alice')
        assert _stored_order(state, order['id'])['status'] == 'new'

    @pytest.mark.parametrize("status", ['final', 'new', 'shipped', None])
    def test_action_rejects_unknown_or_foreign_status(self, state, status):
        order = _passed_order(state)
        with pytest.raises(ValidationError) as exc:
            orders.order_action(state, order['id'], 'tech', status)
        assert exc.value.code == 'bad_status'

    def test_action_on_terminal_order_is_invalid_transition(self, state):
        order = _order_in(state, 'refuse')
        with pytest.raises(TransitionError) as exc:
            orders.order_action(state, order['id'], 'tech', 'closer')
        assert exc.value.code == 'invalid_transition'

    def test_legacy_status_behaves_as_tech_queue(self, state):
        order = _order_in(state, 'tech_work')
        orders.order_action(state, order['id'], 'tech', 'return', tech_login='bob')
        assert _stored_order(state, order['id'])['status'] == 'return'

    def test_tech_to_closer_stamped_once(self, state):
        order = _order_in(state, 'closer', techToCloserAt='2024-01-01 10:00:00')
        orders.order_action(state, order['id'], 'tech', 'closer', tech_login='bob', info='ok')

        stored = _stored_order(state, order['id'])
        assert stored['techToCloserAt'] == '2024-01-01 10:00:00'
        assert stored['techInfo'] == 'ok'

    def test_missing_order(self, state):
        with pytest.raises(NotFoundError):
            orders.order_action(state, 999, 'tech', 'closer')

    def test_to_tech_sends_back_to_rework(self, state):
        order = _order_in(state, 'return')
        orders.to_tech(state, order['id'], 'call again')

        stored = _stored_order(state, order['id'])
        assert stored['status'] == 're-work'
        assert stored['operatorComment'] == 'call again'

    def test_final_requires_closer_status(self, state):
        order = _passed_order(state)
        with pytest.raises(TransitionError):
            orders.final(state, order['id'], 'closer', 'carl')
        assert _stored_order(state, order['id'])['status'] == 'new'

    def test_final_requires_closer_role(self, state):
        order = _order_in(state, 'closer')
        with pytest.raises(AuthorizationError):
            orders.final(state, order['id'], 'tech', 'bob')

    def test_final_promotes_finalizing_closer(self, state):
        order = _order_in(state, 'closer', closers=['dan', 'carl'], closer='dan')
        orders.final(state, order['id'], 'closer', 'carl')

        stored = _stored_order(state, order['id'])
        assert stored['closers'] == ['carl', 'dan']
        assert stored['closer'] == 'carl'

    def test_create_direct_composes_details(self, state):
        order = orders.create_direct(
            state, 'bob', 'tech', 'Dana', '050-111-2222',
            details='urgent', tz='boiler', address='Haifa', age='60', extra='dog',
        )

        assert order['details'] == "urgent\nТЗ: boiler\nАдрес: Haifa\nВозраст: 60\nДоп.Инфа: dog"
        assert order['status'] == 'new'
        assert state.registry.is_used('0501112222')
        events = state.store.load('stats_log', [])
        assert [e['action'] for e in events] == ['CREATE_ORDER']

    def test_create_direct_guards(self, state):
        with pytest.raises(ValidationError) as exc:
            orders.create_direct(state, '', 'user', 'Dana', '0501112222')
        assert exc.value.code == 'bad_request'

        with pytest.raises(AuthorizationError):
            orders.create_direct(state, 'kira', 'kupat', 'Dana', '0501112222')

        with pytest.raises(ValidationError) as exc:
            orders.create_direct(state, 'alice', 'user', 'Dana', '  ')
        assert exc.value.code == 'phone_required'

        assert state.store.load('orders', []) == []

    def test_create_direct_survives_stats_failure(self, state):
        with patch('crm.exports.append_stats_event', side_effect=OSError('boom')):
            order = orders.create_direct(state, 'alice', 'user', 'Dana', '0501112222')
        assert _stored_order(state, order['id'])

    def test_delete_self_by_assigned_tech(self, state):
        order = _order_in(state, 'return', techs=['bob'], tech='bob')
        orders.delete_self(state, order['id'], 'bob', 'tech')
        assert state.store.load('orders', []) == []

    def test_delete_self_by_legacy_assigned_tech(self, state):
        order = _order_in(state, 'return', techs=None, tech='bob')
        orders.delete_self(state, order['id'], 'bob', 'tech')
        assert state.store.load('orders', []) == []

    def test_delete_self_by_other_tech_forbidden(self, state):
        order = _order_in(state, 'return', techs=['bob'], tech='bob')
        with pytest.raises(AuthorizationError):
            orders.delete_self(state, order['id'], 'zed', 'tech')
        assert len(state.store.load('orders', [])) == 1

    def test_delete_item_admin_only(self, state):
        kupat_order = _kupat_order(state)
        with pytest.raises(AuthorizationError):
            orders.delete_item(state, kupat_order['id'], 'kupat', 'kupat')

        orders.delete_item(state, kupat_order['id'], 'kupat', 'admin')
        assert state.store.load('kupat', []) == []

    def test_list_orders_by_role_and_view(self, state):
        mine = _passed_order(state, 'alice', '0501000001')
        other = _passed_order(state, 'olga', '0501000002')
        returned = _order_in(state, 'return', operator='olga')
        at_closer = _order_in(state, 'closer', techs=['bob'], tech='bob')
        legacy = _order_in(state, 'tech_work', techs=None, tech='bob')

        def ids(items):
            return {o['id'] for o in items}

        assert len(orders.list_orders(state, 'admin', 'admin')) == 5
        assert ids(orders.list_orders(state, 'alice', 'user')) == {mine['id'], at_closer['id'], legacy['id']}
        assert ids(orders.list_orders(state, 'alice', 'user', 'returns')) == {returned['id']}
        assert ids(orders.list_orders(state, 'bob', 'tech')) == {mine['id'], other['id'], returned['id']}
        assert ids(orders.list_orders(state, 'bob', 'tech', 'tech-my')) == {legacy['id']}
        assert ids(orders.list_orders(state, 'bob', 'tech', 'my-orders')) == {at_closer['id'], legacy['id']}
        assert ids(orders.list_orders(state, 'carl', 'closer')) == {at_closer['id']}
        assert orders.list_orders(state, 'kira', 'kupat') == []

        listed = next(o for o in orders.list_orders(state, 'admin', 'admin') if o['id'] == legacy['id'])
        assert listed['techs'] == ['bob']

    def test_my_clients(self, state):
        _order_in(state, 'closer', closers=None, closer='carl')
        _passed_order(state, 'alice', '0501000009')

        assert len(orders.my_clients(state, 'alice', 'user')) == 1
        with pytest.raises(AuthorizationError):
            orders.my_clients(state, 'bob', 'tech')
        with pytest.raises(ValidationError):
            orders.my_clients(state, '', 'user')


# ============================================================================
# TEST: assignment lists
# ============================================================================

class TestAssignment:

    def test_same_assignee_twice_is_not_duplicated(self, state):
        order = _passed_order(state)
        orders.assign(state, order['id'], 'tech', 'bob', 'tech')
        orders.assign(state, order['id'], 'tech', ' bob ', 'admin')
        orders.assign(state, order['id'], 'tech', 'ben', 'tech')

        stored = _stored_order(state, order['id'])
        assert stored['techs'] == ['bob', 'ben']
        assert stored['tech'] == 'bob'

    def test_closer_list(self, state):
        order = _order_in(state, 'closer')
        orders.assign(state, order['id'], 'closer', 'carl', 'closer')

        stored = _stored_order(state, order['id'])
        assert stored['closers'] == ['carl']
        assert stored['closer'] == 'carl'

    def test_legacy_singular_field_is_upgraded(self, state):
        order = _order_in(state, 'new', techs=None, tech='old')
        orders.assign(state, order['id'], 'tech', 'bob', 'tech')

        stored = _stored_order(state, order['id'])
        assert stored['techs'] == ['old', 'bob']
        assert stored['tech'] == 'old'

    @pytest.mark.parametrize("list_type,assignee,role,error,code", [
        ('tech', 'bob', 'closer', AuthorizationError, 'forbidden'),
        ('closer', 'carl', 'tech', AuthorizationError, 'forbidden'),
        ('manager', 'bob', 'admin', ValidationError, 'bad_list'),
        ('tech', '   ', 'admin', ValidationError, 'bad_assignee'),
        ('tech', '', 'admin', ValidationError, 'bad_request'),
    ])
    def test_assign_guards(self, state, list_type, assignee, role, error, code):
        order = _passed_order(state)
        with pytest.raises(error) as exc:
            orders.assign(state, order['id'], list_type, assignee, role)
        assert exc.value.code == code

    def test_helpers_keep_mirror_in_sync(self):
        order = {'techs': ['a', 'a', ' b ', None], 'tech': 'zzz'}
        normalize_assignees(order)
        assert order['techs'] == ['a', 'b']
        assert order['tech'] == 'a'
        assert order['closers'] == [] and order['closer'] is None

        add_assignee(order, 'closer', 'c')
        add_assignee(order, 'closer', 'c')
        assert assignee_list(order, 'closer') == ['c']
        assert order['closer'] == 'c'


# ============================================================================
# TEST: order comments
# ============================================================================

class TestOrderComments:

    def test_duplicate_within_window_is_acknowledged_not_stored(self, state):
        order = _passed_order(state)
        first = orders.add_comment(state, order['id'], 'alice', 'user', 'call after 5')
        second = orders.add_comment(state, order['id'], 'alice', 'user', 'call after 5')

        assert first['deduplicated'] is False
        assert second['deduplicated'] is True
        assert len(_stored_order(state, order['id'])['comments']) == 1

    def test_different_text_is_stored(self, state):
        order = _passed_order(state)
        orders.add_comment(state, order['id'], 'alice', 'user', 'one')
        orders.add_comment(state, order['id'], 'alice', 'user', 'two')
        assert len(_stored_order(state, order['id'])['comments']) == 2

    def test_old_identical_comment_is_not_a_duplicate(self):
        old = (timezone.now() - timedelta(seconds=60)).isoformat()
        comments = [{'by': 'alice', 'role': 'user', 'text': 'hi', 'createdAt': old}]

        assert is_duplicate_comment(comments, 'alice', 'user', 'hi', None) is False
        comments[0]['createdAt'] = timezone.now().isoformat()
        assert is_duplicate_comment(comments, 'alice', 'user', 'hi', None) is True
        assert is_duplicate_comment(comments, 'alice', 'tech', 'hi', None) is False

    def test_empty_comment(self, state):
        order = _passed_order(state)
        with pytest.raises(ValidationError) as exc:
            orders.add_comment(state, order['id'], 'alice', 'user', '   ')
        assert exc.value.code == 'empty'

    def test_operator_blocked_once_order_reaches_closer(self, state):
        order = _order_in(state, 'closer')
        with pytest.raises(AuthorizationError):
            orders.add_comment(state, order['id'], 'alice', 'user', 'hello?')
        assert _stored_order(state, order['id'])['comments'] == []

    def test_tech_auto_claims_unassigned_order(self, state):
        order = _passed_order(state)
        orders.add_comment(state, order['id'], 'bob', 'tech', 'on it')

        stored = _stored_order(state, order['id'])
        assert stored['tech'] == 'bob'
        assert stored['techs'] == ['bob']

    def test_closer_auto_claims_only_in_closer_status(self, state):
        order = _order_in(state, 'closer')
        orders.add_comment(state, order['id'], 'carl', 'closer', 'calling')
        assert _stored_order(state, order['id'])['closer'] == 'carl'

        finished = _order_in(state, 'final')
        orders.add_comment(state, finished['id'], 'carl', 'closer', 'archived')
        assert _stored_order(state, finished['id'])['closer'] is None

    def test_closer_blocked_in_tech_queue(self, state):
        order = _passed_order(state)
        with pytest.raises(AuthorizationError):
            orders.add_comment(state, order['id'], 'carl', 'closer', 'hi')

    def test_operator_file_is_rejected_and_deleted(self, state, upload_file):
        order = _passed_order(state)
        ref = upload_file()

        with pytest.raises(AuthorizationError) as exc:
            orders.add_comment(state, order['id'], 'alice', 'user', 'see photo', ref)

        assert exc.value.code == 'forbidden_file'
        assert not state.uploads.path_for(ref).exists()

    def test_forbidden_comment_deletes_file(self, state, upload_file):
        order = _order_in(state, 'refuse')
        ref = upload_file()

        with pytest.raises(AuthorizationError):
            orders.add_comment(state, order['id'], 'bob', 'tech', 'late', ref)

        assert not state.uploads.path_for(ref).exists()

    def test_missing_order_deletes_file(self, state, upload_file):
        ref = upload_file()
        with pytest.raises(NotFoundError):
            orders.add_comment(state, 404, 'bob', 'tech', 'x', ref)
        assert not state.uploads.path_for(ref).exists()

    def test_tech_file_is_attached(self, state, upload_file):
        order = _passed_order(state)
        ref = upload_file()

        orders.add_comment(state, order['id'], 'bob', 'tech', '', ref)

        comment = _stored_order(state, order['id'])['comments'][0]
        assert comment['file'] == ref
        assert comment['text'] == ''
        assert state.uploads.path_for(ref).exists()


# ============================================================================
# TEST: can_perform
# ============================================================================

class TestPolicy:

    @pytest.mark.parametrize("role,status,login,closers,expected", [
        ('admin', 'final', 'root', [], True),
        ('user', 'new', 'alice', [], True),
        ('user', 're-work', 'alice', [], True),
        ('user', 'closer', 'alice', [], False),
        ('tech', 'closer', 'bob', [], True),
        ('tech', 'final', 'bob', [], False),
        ('tech', 'refuse', 'bob', [], False),
        ('closer', 'closer', 'carl', [], True),
        ('closer', 'new', 'carl', ['carl'], True),
        ('closer', 'new', 'dan', ['carl'], False),
        ('kupat', 'new', 'kira', [], False),
    ])
    def test_order_comment_matrix(self, role, status, login, closers, expected):
        order = {'status': status, 'closers': closers}
        assert can_perform(role, 'order.comment', login=login, record=order) is expected

    @pytest.mark.parametrize("role,action,expected", [
        ('kupat', 'order.create_direct', False),
        ('user', 'order.create_direct', True),
        ('user', 'attach_file', False),
        ('closer', 'attach_file', True),
        ('user', 'callback.transfer_tech', True),
        ('kupat', 'callback.transfer_tech', False),
        ('kupat', 'callback.transfer_closer', True),
        ('closer', 'callback.add', False),
        ('tech', 'users.manage', False),
        (None, 'order.to_tech', False),
    ])
    def test_role_grants(self, role, action, expected):
        assert can_perform(role, action) is expected

    def test_record_rule_without_record_denies(self):
        assert can_perform('tech', 'order.delete', login='bob') is False

    def test_kupat_comment_requires_assignment(self):
        order = {'kupatUser': 'kira'}
        assert can_perform('kupat', 'kupat.comment', login='kira', record=order) is True
        assert can_perform('kupat', 'kupat.comment', login='kim', record=order) is False

    def test_unknown_action(self):
        with pytest.raises(ValueError):
            can_perform('admin', 'order.teleport')


# ============================================================================
# TEST: kupat lifecycle
# ============================================================================

class TestKupatLifecycle:

    def test_full_flow(self, state):
        order = _kupat_order(state)

        kupat.kupat_action(state, order['id'], 'kupat', 'kupat_work', 'kira')
        kupat.kupat_action(state, order['id'], 'kupat', 'kupat_to_closer', 'kira', note='ready')
        stamped = _stored(state, 'kupat', order['id'])['kupatToCloserAt']

        kupat.kupat_action(state, order['id'], 'kupat', 'kupat_work', 'kira')
        kupat.kupat_action(state, order['id'], 'kupat', 'kupat_to_closer', 'kira')
        stored = _stored(state, 'kupat', order['id'])
        assert stored['kupatToCloserAt'] == stamped
        assert stored['kupatUser'] == 'kira'
        assert stored['kupatNote'] == 'ready'

        kupat.final(state, order['id'], 'closer', 'carl', text='signed', color='green')
        stored = _stored(state, 'kupat', order['id'])
        assert stored['status'] == 'kupat_final'
        assert stored['closer'] == 'carl'
        assert stored['finalText'] == 'signed'

    def test_refusal_from_any_open_state(self, state):
        order = _kupat_order(state)
        kupat.kupat_action(state, order['id'], 'admin', 'kupat_refuse', 'root')
        assert _stored(state, 'kupat', order['id'])['status'] == 'kupat_refuse'

        with pytest.raises(TransitionError):
            kupat.kupat_action(state, order['id'], 'kupat', 'kupat_work', 'kira')

    def test_final_requires_to_closer(self, state):
        order = _kupat_order(state)
        with pytest.raises(TransitionError):
            kupat.final(state, order['id'], 'closer', 'carl')

    def test_action_guards(self, state):
        order = _kupat_order(state)
        with pytest.raises(AuthorizationError):
            kupat.kupat_action(state, order['id'], 'tech', 'kupat_work', 'bob')
        with pytest.raises(ValidationError):
            kupat.kupat_action(state, order['id'], 'kupat', 'kupat_final', 'kira')

    def test_assign_closer(self, state):
        order = _kupat_order(state)
        with pytest.raises(AuthorizationError):
            kupat.assign_closer(state, order['id'], 'carl', 'kupat')

        kupat.assign_closer(state, order['id'], 'carl', 'closer')
        assert _stored(state, 'kupat', order['id'])['closer'] == 'carl'

    def test_comment_rules(self, state):
        order = _kupat_order(state)
        kupat.kupat_action(state, order['id'], 'kupat', 'kupat_work', 'kira')

        with pytest.raises(AuthorizationError):
            kupat.add_comment(state, order['id'], 'kim', 'kupat', 'mine now')

        result = kupat.add_comment(state, order['id'], 'kira', 'kupat', 'x' * 2500)
        assert result['deduplicated'] is False
        assert len(result['order']['comments'][0]['text']) == 2000

        again = kupat.add_comment(state, order['id'], 'kira', 'kupat', 'x' * 2500)
        assert again['deduplicated'] is True

    def test_comment_without_role_is_refused(self, state):
        order = _kupat_order(state)
        kupat.kupat_action(state, order['id'], 'kupat', 'kupat_work', 'kira')

        with pytest.raises(AuthorizationError):
            kupat.add_comment(state, order['id'], 'kira', None, 'hi')
        with pytest.raises(AuthorizationError):
            kupat.add_comment(state, order['id'], 'kira', '', 'hi')

        assert _stored(state, 'kupat', order['id']).get('comments', []) == []

    def test_comment_file_uses_file_url(self, state, upload_file):
        order = _kupat_order(state)
        ref = upload_file('scan.pdf')

        kupat.add_comment(state, order['id'], 'root', 'admin', '', ref)

        assert _stored(state, 'kupat', order['id'])['comments'][0]['fileUrl'] == ref

    def test_rejected_comment_deletes_file(self, state, upload_file):
        order = _kupat_order(state)
        ref = upload_file('scan.pdf')

        with pytest.raises(AuthorizationError):
            kupat.add_comment(state, order['id'], 'carl', 'closer', 'hi', ref)

        assert not state.uploads.path_for(ref).exists()

    def test_list_views(self, state):
        fresh = _kupat_order(state, phone='0507000001')
        handed = _kupat_order(state, phone='0507000002')
        kupat.kupat_action(state, handed['id'], 'kupat', 'kupat_to_closer', 'kira')

        assert [o['id'] for o in kupat.list_kupat(state, 'kira', 'kupat', 'incoming')] == [fresh['id']]
        assert len(kupat.list_kupat(state, 'kira', 'kupat')) == 2
        assert [o['id'] for o in kupat.list_kupat(state, 'carl', 'closer')] == [handed['id']]
        assert kupat.list_kupat(state, 'alice', 'user') == []


# ============================================================================
# TEST: callback queue
# ============================================================================

class TestCallbacks:

    def test_owner_scoped_crud(self, state):
        item = callbacks.add_callback(state, 'alice', 'user', client_name='Dana', phone='0501112222', text='at 5')

        assert callbacks.list_callbacks(state, 'alice') == [item]
        assert callbacks.list_callbacks(state, 'bob') == []

        with pytest.raises(AuthorizationError):
            callbacks.update_callback(state, 'bob', item['id'], text='mine')
        with pytest.raises(NotFoundError):
            callbacks.update_callback(state, 'alice', 'missing', text='x')

        updated = callbacks.update_callback(state, 'alice', item['id'], client_name='Dana', phone='0501112222', text='at 6')
        assert updated['text'] == 'at 6'
        assert updated['updatedAt']

        with pytest.raises(AuthorizationError):
            callbacks.delete_callback(state, 'bob', item['id'])
        callbacks.delete_callback(state, 'alice', item['id'])
        assert callbacks.list_callbacks(state, 'alice') == []

    def test_add_requires_allowed_role(self, state):
        with pytest.raises(AuthorizationError):
            callbacks.add_callback(state, 'carl', 'closer')
        with pytest.raises(ValidationError):
            callbacks.list_callbacks(state, '')

    def test_transfer_to_tech(self, state):
        item = callbacks.add_callback(state, 'alice', 'user', client_name='Dana', phone='0501112222', text='boiler')

        order = callbacks.transfer_to_tech(state, 'alice', 'user', item['id'])

        assert order['status'] == 'new'
        assert order['operator'] == 'alice'
        assert order['details'] == 'boiler'
        assert callbacks.list_callbacks(state, 'alice') == []

    def test_transfer_to_tech_guards(self, state):
        item = callbacks.add_callback(state, 'alice', 'user')
        with pytest.raises(AuthorizationError):
            callbacks.transfer_to_tech(state, 'kira', 'kupat', item['id'])
        with pytest.raises(AuthorizationError):
            callbacks.transfer_to_tech(state, 'admin', 'admin', item['id'])
        assert state.store.load('orders', []) == []
        assert len(callbacks.list_callbacks(state, 'alice')) == 1

    def test_transfer_to_closer_updates_existing_kupat_order(self, state):
        order = _kupat_order(state)
        item = callbacks.add_callback(state, 'kira', 'kupat', source='kupat', source_id=order['id'], text='wants meeting')

        target = callbacks.transfer_to_closer(state, 'kira', 'kupat', item['id'])

        assert target['id'] == order['id']
        stored = state.store.load('kupat', [])
        assert len(stored) == 1
        assert stored[0]['status'] == 'kupat_to_closer'
        assert stored[0]['kupatUser'] == 'kira'
        assert stored[0]['kupatNote'] == 'wants meeting'
        assert stored[0]['kupatToCloserAt']
        assert callbacks.list_callbacks(state, 'kira') == []

    def test_transfer_to_closer_synthesizes_order(self, state):
        item = callbacks.add_callback(state, 'kira', 'kupat', client_name='Rina', phone='0507778888', text='pension')

        target = callbacks.transfer_to_closer(state, 'kira', 'kupat', item['id'])

        assert target['status'] == 'kupat_to_closer'
        assert target['operatorFrom'] == 'kira'
        assert target['kupatUser'] == 'kira'
        assert len(state.store.load('kupat', [])) == 1


# ============================================================================
# TEST: notes
# ============================================================================

class TestNotes:

    def test_add_and_list(self, state):
        item = notes.add_note(state, 'alice', 'user', {'comment': 'vip', 'phone': '0501112222'})

        assert notes.list_notes(state, 'alice') == [item]
        assert notes.list_notes(state, 'bob') == []

    def test_add_requires_comment_or_file(self, state):
        with pytest.raises(ValidationError) as exc:
            notes.add_note(state, 'alice', 'user', {'comment': ' '})
        assert exc.value.code == 'comment_or_file_required'

    def test_operator_file_rejected_and_deleted(self, state, upload_file):
        ref = upload_file()
        with pytest.raises(AuthorizationError):
            notes.add_note(state, 'alice', 'user', {'comment': 'x'}, ref)
        assert not state.uploads.path_for(ref).exists()
        assert state.store.load('notes', []) == []

    def test_update_replaces_file(self, state, upload_file):
        old = upload_file('old.png')
        item = notes.add_note(state, 'bob', 'tech', {'comment': 'first'}, old)
        new = upload_file('new.png')

        notes.update_note(state, 'bob', item['id'], 'second', role='tech', file_ref=new)

        stored = notes.list_notes(state, 'bob')[0]
        assert stored['comment'] == 'second'
        assert stored['file'] == new
        assert not state.uploads.path_for(old).exists()
        assert state.uploads.path_for(new).exists()

    def test_update_guards(self, state, upload_file):
        item = notes.add_note(state, 'bob', 'tech', {'comment': 'first'})
        ref = upload_file()

        with pytest.raises(AuthorizationError):
            notes.update_note(state, 'alice', item['id'], 'x', role='user', file_ref=ref)
        assert not state.uploads.path_for(ref).exists()

        with pytest.raises(ValidationError) as exc:
            notes.update_note(state, 'bob', '', 'x')
        assert exc.value.code == 'id_required'

    def test_delete_removes_attachment(self, state, upload_file):
        ref = upload_file()
        item = notes.add_note(state, 'carl', 'closer', {'comment': ''}, ref)

        notes.delete_note(state, 'carl', item['id'])

        assert notes.list_notes(state, 'carl') == []
        assert not state.uploads.path_for(ref).exists()


# ============================================================================
# TEST: users
# ============================================================================

class TestUsers:

    def test_default_admin_is_seeded(self, tmp_path):
        state = AppState(store=DocumentStore(tmp_path / 'empty'))
        user = users.authenticate(state, 'admin', 'admin123')
        assert user['role'] == 'admin'

    def test_bad_credentials(self, state):
        with pytest.raises(AuthenticationError):
            users.authenticate(state, 'alice', 'wrong')

    def test_last_admin_cannot_be_deleted(self, state):
        before = users.list_users(state)

        with pytest.raises(ValidationError) as exc:
            users.delete_user(state, 'admin', 'admin')

        assert exc.value.code == 'cannot_delete_last_admin'
        assert users.list_users(state) == before

    def test_admin_deletable_when_another_exists(self, state):
        users.add_user(state, 'admin', 'root', 'pw', 'admin')
        users.delete_user(state, 'admin', 'admin')
        assert [u['login'] for u in users.list_users(state) if u['role'] == 'admin'] == ['root']

    def test_add_user_guards(self, state):
        with pytest.raises(AuthorizationError):
            users.add_user(state, 'user', 'eve', 'pw', 'admin')
        with pytest.raises(ValidationError) as exc:
            users.add_user(state, 'admin', 'alice', 'pw', 'user')
        assert exc.value.code == 'login_taken'
        with pytest.raises(ValidationError) as exc:
            users.add_user(state, 'admin', 'eve', 'pw', 'boss')
        assert exc.value.code == 'bad_role'

    def test_set_balance(self, state):
        users.set_balance(state, 'admin', 'alice', '42.5')
        assert users.find_user(state, 'alice')['balance'] == 42.5

        with pytest.raises(AuthorizationError):
            users.set_balance(state, 'user', 'alice', 1)
        with pytest.raises(NotFoundError):
            users.set_balance(state, 'admin', 'ghost', 1)


# ============================================================================
# TEST: statistics
# ============================================================================

class TestStats:

    def test_me_stats_for_operator(self, state):
        _passed_order(state, 'alice', '0501000001')
        _kupat_order(state, 'alice', '0507000001')
        calls.record_call_result(state, 'НДЗ', 'alice', '0501000002', 'X', '')

        result = stats.me_stats(state, 'alice', 'user')

        assert result['balance'] == 10
        assert result['calls'] == {'total': 3, 'passedToTech': 1, 'sentToKupat': 1}
        assert result['stats']['main']['total'] == 1
        assert result['stats']['main']['new'] == 1
        assert result['stats']['kupat']['incoming'] == 1

    def test_me_stats_kupat_pipeline_counters(self, state):
        order = _kupat_order(state)
        kupat.kupat_action(state, order['id'], 'kupat', 'kupat_to_closer', 'kira')

        result = stats.me_stats(state, 'kira', 'kupat')

        assert result['stats']['kupat']['closer'] == 1
        assert result['stats']['kupat']['final'] == 0

    def test_me_stats_closer_interaction(self, state):
        _order_in(state, 'final', closers=None, closer='carl')
        result = stats.me_stats(state, 'carl', 'closer')
        assert result['closer']['closerWorked'] == 1
        assert result['closer']['closerFinal'] == 1

    def test_global_stats_lists_every_user(self, state):
        _passed_order(state, 'alice')
        result = stats.global_stats(state)

        by_login = {row['login']: row for row in result['byUsers']}
        assert set(by_login) == {'admin', 'alice', 'bob', 'carl', 'kira'}
        assert by_login['alice']['main']['created'] == 1
        assert by_login['alice']['calls']['passedToTech'] == 1

    def test_record_event_requires_known_user(self, state):
        with pytest.raises(AuthorizationError) as exc:
            stats.record_event(state, 'ghost', 'user', 'CALL')
        assert exc.value.code == 'unknown_user'
        with pytest.raises(ValidationError):
            stats.record_event(state, 'alice', 'user', '')

    def test_record_event_caps_extra_and_writes_workbook(self, state):
        event = stats.record_event(state, 'alice', None, 'CALL', phone='0501', extra='x' * 900)

        assert event['role'] == 'user'
        assert len(event['extra']) == 500
        assert state.store.load('stats_log', []) == [event]
        rows = exports.read_rows(exports.STATS_FILE, event['ts'][:10])
        assert rows[0] == exports.STATS_HEADERS
        assert rows[1][1] == 'alice'

    def test_day_stats_buckets(self, state):
        for action in ('CALL', 'АВТО', 'ЗАКРЫЛ', 'на купат', 'ИВРИТ', 'something'):
            event = stats.record_event(state, 'alice', 'user', action)

        result = stats.day_stats(state, 'admin', 'admin', event['ts'])

        assert result['date'] == event['ts'][:10]
        assert [row['login'] for row in result['rows']] == ['admin', 'alice', 'bob', 'carl', 'kira']
        alice = result['rows'][1]
        assert (alice['calls'], alice['auto'], alice['closed'], alice['kupat'], alice['ivrit']) == (1, 1, 1, 1, 1)
        assert alice['ndz'] == 0
        assert alice['first'] <= alice['last']
        assert result['rows'][0]['calls'] == 0

    def test_day_stats_admin_only(self, state):
        with pytest.raises(AuthorizationError):
            stats.day_stats(state, 'alice', 'admin', '2024-01-01')
        with pytest.raises(ValidationError):
            stats.day_stats(state, 'admin', 'admin', '')

    def test_call_logs_admin_only(self, state):
        _passed_order(state)
        assert len(stats.call_logs(state, 'admin')) == 1
        assert stats.call_logs(state, 'user') == []

    def test_call_logs_skip_malformed_entries(self, state):
        _passed_order(state)
        with state.store.transaction('history') as history:
            history.extend(['garbage', 42, None])

        logs = stats.call_logs(state, 'admin')

        assert len(logs) == 1
        assert logs[0]['phone'] == '0501112222'


# ============================================================================
# TEST: HTTP views
# ============================================================================

@pytest.fixture
def api_state(state, monkeypatch):
    monkeypatch.setattr('call_center.state._state', state)
    return state


class TestViews:

    def test_login(self, client, api_state):
        ok = client.post('/api/login', {'login': 'alice', 'pass': 'a'}, content_type='application/json')
        assert ok.status_code == 200
        assert ok.json()['user']['role'] == 'user'

        denied = client.post('/api/login', {'login': 'alice', 'pass': 'x'}, content_type='application/json')
        assert denied.status_code == 401
        assert denied.json()['success'] is False

    def test_save_result_then_list(self, client, api_state):
        response = client.post('/api/save-result', {
            'status': 'ПЕРЕДАЛ', 'user': 'alice', 'phone': '0501112222', 'name': 'Dana', 'note': '',
        }, content_type='application/json')
        assert response.json() == {'success': True}

        listed = client.get('/api/orders', {'login': 'alice', 'role': 'user'}).json()
        assert len(listed) == 1
        assert listed[0]['techs'] == []

    def test_no_cache_headers(self, client, api_state):
        response = client.get('/api/databases')
        assert response.json() == []
        assert 'no-store' in response['Cache-Control']

    def test_get_row_soft_error(self, client, api_state):
        response = client.get('/api/get-row')
        assert response.status_code == 200
        assert response.json()['error'] == 'no_active_database'

    def test_upload_and_deal(self, client, api_state):
        upload = SimpleUploadedFile('leads.csv', b"Dana,0501112222\nEli,0503334444\n", content_type='text/csv')

        forbidden = client.post('/api/upload', {'file': upload, 'requesterRole': 'user'})
        assert forbidden.status_code == 403

        upload.seek(0)
        created = client.post('/api/upload', {'file': upload, 'requesterRole': 'admin'}).json()
        assert created['rows'] == 2

        client.post('/api/set-active-db', {'dbId': created['id'], 'requesterRole': 'admin'}, content_type='application/json')
        row = client.get('/api/get-row').json()['row']
        assert row[1] in ('0501112222', '0503334444')

    def test_rejected_comment_upload_is_deleted(self, client, api_state):
        order = _passed_order(api_state)
        photo = SimpleUploadedFile('photo.png', b'png', content_type='image/png')

        response = client.post('/api/orders/comment', {
            'id': order['id'], 'login': 'alice', 'role': 'user', 'text': 'look', 'file': photo,
        })

        assert response.status_code == 403
        assert response.json()['error'] == 'forbidden_file'
        assert list(api_state.uploads.base_dir.iterdir()) == []

    def test_comment_dedup_over_http(self, client, api_state):
        order = _passed_order(api_state)
        payload = {'id': order['id'], 'login': 'bob', 'role': 'tech', 'text': 'on my way'}

        first = client.post('/api/orders/comment', payload, content_type='application/json').json()
        second = client.post('/api/orders/comment', payload, content_type='application/json').json()

        assert first == {'success': True}
        assert second == {'success': True, 'deduplicated': True}

    def test_invalid_transition_status_code(self, client, api_state):
        order = _passed_order(api_state)
        response = client.post('/api/orders/final', {
            'id': order['id'], 'role': 'closer', 'closerLogin': 'carl',
        }, content_type='application/json')
        assert response.status_code == 409
        assert response.json()['error'] == 'invalid_transition'

    def test_last_admin_delete_over_http(self, client, api_state):
        response = client.post('/api/users/delete', {'login': 'admin', 'requesterRole': 'admin'}, content_type='application/json')
        assert response.status_code == 400
        assert response.json()['error'] == 'cannot_delete_last_admin'

    def test_note_update_with_multipart_put(self, client, api_state, upload_file):
        old = upload_file('old.png')
        item = notes.add_note(api_state, 'bob', 'tech', {'comment': 'first'}, old)
        body = encode_multipart(BOUNDARY, {
            'login': 'bob', 'id': item['id'], 'comment': 'second', 'role': 'tech',
            'file': SimpleUploadedFile('new.png', b'new', content_type='image/png'),
        })

        response = client.put('/api/notes/update', body, content_type=MULTIPART_CONTENT)

        assert response.json() == {'ok': True}
        stored = notes.list_notes(api_state, 'bob')[0]
        assert stored['comment'] == 'second'
        assert stored['file'] != old
        assert api_state.uploads.path_for(stored['file']).exists()
        assert not api_state.uploads.path_for(old).exists()

    def test_callback_singular_alias(self, client, api_state):
        client.post('/api/callback/add', {'login': 'alice', 'role': 'user', 'text': 'at 5'}, content_type='application/json')
        listed = client.get('/api/callbacks', {'login': 'alice'}).json()
        assert [c['text'] for c in listed] == ['at 5']

    def test_downloads_are_admin_only(self, client, api_state):
        denied = client.get('/api/export/kupat', {'login': 'alice', 'role': 'admin'})
        assert denied.status_code == 403

        response = client.get('/api/export/auto-ndz', {'login': 'admin', 'role': 'admin'})
        assert response.status_code == 200
        assert 'export_auto_ndz.xlsx' in response['Content-Disposition']
        assert b''.join(response.streaming_content)[:2] == b'PK'
