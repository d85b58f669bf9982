"""
API views for the CRM endpoints.

Thin JSON endpoints: every view reads its fields, calls one service function
with the process AppState and serializes the result. Guards live in the
services; CRMError is turned into {'success': False, 'error': code} by
api_view.
"""

import logging

import orjson as json
from django.http import FileResponse, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from call_center.exceptions import AuthorizationError, ValidationError
from call_center.http import api_view, json_list, request_data, store_upload
from call_center.state import get_state
from . import callbacks, calls, exports, kupat, notes, orders, stats, users

logger = logging.getLogger(__name__)

XLSX_CONTENT_TYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'


# ============================================================================
# AUTH & USERS
# ============================================================================

@csrf_exempt
@require_http_methods(["POST"])
@api_view
def login(request):
    data = request_data(request)
    user = users.authenticate(get_state(), data.get('login'), data.get('pass'))
    return JsonResponse({'success': True, 'user': user})


@require_http_methods(["GET"])
@api_view
def list_users(request):
    return JsonResponse({'users': users.list_users(get_state())})


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def add_user(request):
    data = request_data(request)
    users.add_user(
        get_state(), data.get('requesterRole'),
        data.get('login'), data.get('pass'), data.get('role'), data.get('balance', 0),
    )
    return JsonResponse({'success': True})


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def delete_user(request):
    data = request_data(request)
    users.delete_user(get_state(), data.get('requesterRole'), data.get('login'))
    return JsonResponse({'success': True})


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def set_balance(request):
    data = request_data(request)
    users.set_balance(get_state(), data.get('requesterRole'), data.get('login'), data.get('balance'))
    return JsonResponse({'success': True})


# ============================================================================
# NOTES
# ============================================================================

@require_http_methods(["GET"])
@api_view
def list_notes(request):
    return json_list(notes.list_notes(get_state(), request.GET.get('login', '')))


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def add_note(request):
    """
    POST /api/notes/add

    JSON {"login": ..., "role": ..., "note": {...}} or form-data with the note
    fields inline and an optional "file".
    """
    state = get_state()
    data = request_data(request)
    note = data.get('note', data)
    if isinstance(note, str):
        try:
            note = json.loads(note)
        except json.JSONDecodeError:
            raise ValidationError('bad_request')
    if not isinstance(note, dict):
        raise ValidationError('bad_request')

    item = notes.add_note(state, data.get('login'), data.get('role'), note, store_upload(state, request))
    return JsonResponse({'ok': True, 'id': item['id']})


@csrf_exempt
@require_http_methods(["PUT", "POST"])
@api_view
def update_note(request):
    state = get_state()
    data = request_data(request)
    notes.update_note(
        state, data.get('login'), data.get('id'), data.get('comment'),
        role=data.get('role'), file_ref=store_upload(state, request),
    )
    return JsonResponse({'ok': True})


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def delete_note(request):
    data = request_data(request)
    notes.delete_note(get_state(), data.get('login'), data.get('id'))
    return JsonResponse({'ok': True})


# ============================================================================
# CALL RESULTS
# ============================================================================

@csrf_exempt
@require_http_methods(["POST"])
@api_view
def save_result(request):
    data = request_data(request)
    calls.record_call_result(
        get_state(), data.get('status'), data.get('user'), data.get('phone'), data.get('name'), data.get('note'),
    )
    return JsonResponse({'success': True})


@require_http_methods(["GET"])
@api_view
def call_logs(request):
    return json_list(stats.call_logs(get_state(), request.GET.get('role')))


# ============================================================================
# CALLBACKS
# ============================================================================

@require_http_methods(["GET"])
@api_view
def list_callbacks(request):
    return json_list(callbacks.list_callbacks(get_state(), request.GET.get('login', '')))


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def add_callback(request):
    data = request_data(request)
    item = callbacks.add_callback(
        get_state(), data.get('login'), data.get('role'),
        source=data.get('source'), source_id=data.get('sourceId'),
        client_name=data.get('clientName'), phone=data.get('phone'),
        text=data.get('text'), card=data.get('card'),
    )
    return JsonResponse({'success': True, 'item': item})


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def update_callback(request):
    data = request_data(request)
    item = callbacks.update_callback(
        get_state(), data.get('login'), data.get('id'),
        client_name=data.get('clientName'), phone=data.get('phone'), text=data.get('text'),
    )
    return JsonResponse({'success': True, 'item': item})


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def delete_callback(request):
    data = request_data(request)
    callbacks.delete_callback(get_state(), data.get('login'), data.get('id'))
    return JsonResponse({'success': True})


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def transfer_callback_to_tech(request):
    data = request_data(request)
    callbacks.transfer_to_tech(get_state(), data.get('login'), data.get('role'), data.get('id'))
    return JsonResponse({'success': True})


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def transfer_callback_to_closer(request):
    data = request_data(request)
    callbacks.transfer_to_closer(get_state(), data.get('login'), data.get('role'), data.get('id'))
    return JsonResponse({'success': True})


# ============================================================================
# ORDERS
# ============================================================================

@require_http_methods(["GET"])
@api_view
def list_orders(request):
    """GET /api/orders?login=&role=&view=my-orders|tech-my|returns"""
    params = request.GET
    return json_list(orders.list_orders(get_state(), params.get('login'), params.get('role'), params.get('view')))


@require_http_methods(["GET"])
@api_view
def my_clients(request):
    params = request.GET
    return json_list(orders.my_clients(get_state(), params.get('login'), params.get('role')))


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def order_action(request):
    data = request_data(request)
    orders.order_action(
        get_state(), data.get('id'), data.get('role', data.get('requesterRole')),
        data.get('status'), tech_login=data.get('techLogin'), info=data.get('info'),
    )
    return JsonResponse({'success': True})


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def delete_own_order(request):
    data = request_data(request)
    orders.delete_self(get_state(), data.get('id'), data.get('login'), data.get('role'))
    return JsonResponse({'success': True})


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def assign_order(request):
    data = request_data(request)
    order = orders.assign(
        get_state(), data.get('id'), data.get('listType'), data.get('assignee'), data.get('requesterRole'),
    )
    return JsonResponse({'success': True, 'order': order})


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def create_direct_order(request):
    data = request_data(request)
    order = orders.create_direct(
        get_state(), data.get('login'), data.get('role'), data.get('clientName'), data.get('phone'),
        details=data.get('details'), tz=data.get('tz'), address=data.get('address'),
        age=data.get('age'), extra=data.get('extra'),
    )
    return JsonResponse({'success': True, 'id': order['id']})


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def order_to_tech(request):
    data = request_data(request)
    orders.to_tech(get_state(), data.get('id'), data.get('comment'))
    return JsonResponse({'success': True})


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def comment_order(request):
    state = get_state()
    data = request_data(request)
    result = orders.add_comment(
        state, data.get('id'), data.get('login'), data.get('role'), data.get('text'), store_upload(state, request),
    )
    if result['deduplicated']:
        return JsonResponse({'success': True, 'deduplicated': True})
    return JsonResponse({'success': True})


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def final_order(request):
    data = request_data(request)
    orders.final(
        get_state(), data.get('id'), data.get('role', data.get('requesterRole')),
        data.get('closerLogin'), color=data.get('color'), text=data.get('text'),
    )
    return JsonResponse({'success': True})


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def delete_item(request):
    data = request_data(request)
    orders.delete_item(get_state(), data.get('id'), data.get('type'), data.get('requesterRole'))
    return JsonResponse({'success': True})


# ============================================================================
# KUPAT
# ============================================================================

@require_http_methods(["GET"])
@api_view
def list_kupat(request):
    params = request.GET
    return json_list(kupat.list_kupat(get_state(), params.get('login'), params.get('role'), params.get('view')))


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def kupat_action(request):
    data = request_data(request)
    kupat.kupat_action(
        get_state(), data.get('id'), data.get('role', data.get('requesterRole')),
        data.get('status'), data.get('user'), note=data.get('note'),
    )
    return JsonResponse({'success': True})


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def kupat_assign_closer(request):
    data = request_data(request)
    order = kupat.assign_closer(get_state(), data.get('id'), data.get('closer'), data.get('requesterRole'))
    return JsonResponse({'success': True, 'order': order})


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def kupat_comment(request):
    state = get_state()
    data = request_data(request)
    result = kupat.add_comment(
        state, data.get('id'), data.get('login'), data.get('role'), data.get('text'), store_upload(state, request),
    )
    if result['deduplicated']:
        return JsonResponse({'success': True, 'deduplicated': True, 'order': result['order']})
    return JsonResponse({'success': True, 'order': result['order']})


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def kupat_final(request):
    data = request_data(request)
    kupat.final(
        get_state(), data.get('id'), data.get('role', data.get('requesterRole')),
        data.get('closer'), text=data.get('text'), color=data.get('color'),
    )
    return JsonResponse({'success': True})


# ============================================================================
# STATISTICS
# ============================================================================

@require_http_methods(["GET"])
@api_view
def me_stats(request):
    params = request.GET
    return JsonResponse(stats.me_stats(get_state(), params.get('login'), params.get('role')))


@require_http_methods(["GET"])
@api_view
def global_stats(request):
    return JsonResponse(stats.global_stats(get_state()))


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def stats_event(request):
    data = request_data(request)
    stats.record_event(
        get_state(), data.get('login'), data.get('role'), data.get('action'),
        phone=data.get('phone'), extra=data.get('extra'),
    )
    return JsonResponse({'ok': True})


@require_http_methods(["GET"])
@api_view
def admin_day_stats(request):
    params = request.GET
    return JsonResponse(stats.day_stats(get_state(), params.get('login'), params.get('role'), params.get('date')))


# ============================================================================
# DOWNLOADS
# ============================================================================

def _download(request, ensure, file_name):
    params = request.GET
    if not stats.is_admin(get_state(), params.get('login'), params.get('role')):
        raise AuthorizationError()
    path = ensure()
    return FileResponse(open(path, 'rb'), as_attachment=True, filename=file_name, content_type=XLSX_CONTENT_TYPE)


@require_http_methods(["GET"])
@api_view
def download_day_stats(request):
    return _download(request, exports.ensure_stats_workbook, exports.STATS_FILE)


@require_http_methods(["GET"])
@api_view
def download_kupat_export(request):
    return _download(request, exports.ensure_kupat_workbook, exports.KUPAT_FILE)


@require_http_methods(["GET"])
@api_view
def download_auto_ndz_export(request):
    return _download(request, exports.ensure_auto_ndz_workbook, exports.AUTO_NDZ_FILE)
