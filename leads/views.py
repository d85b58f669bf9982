"""
API views for lead databases and row dealing.
"""

import logging

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from call_center.exceptions import ValidationError
from call_center.http import api_view, as_bool, json_list, request_data, uploaded_file
from call_center.state import get_state
from crm.permissions import require
from .utils import parse_lead_rows

logger = logging.getLogger(__name__)


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def upload_database(request):
    """
    POST /api/upload (multipart)

    "file": xlsx / xls / csv, first sheet, no header row
    "requesterRole": must be admin
    """
    data = request_data(request)
    require(data.get('requesterRole'), 'database.manage')

    upload = uploaded_file(request)
    if upload is None:
        raise ValidationError('file_required')

    try:
        rows = parse_lead_rows(upload)
    except Exception as e:
        logger.error(f"Could not parse lead file {upload.name!r}: {str(e)}")
        raise ValidationError('bad_file')

    record = get_state().dealer.add_database(upload.name, rows)
    return JsonResponse({'success': True, 'id': record['id'], 'rows': len(record['rows'])})


@require_http_methods(["GET"])
@api_view
def list_databases(request):
    return json_list(get_state().dealer.list_databases())


@csrf_exempt
@require_http_methods(["POST"])
@api_view
def set_active_database(request):
    data = request_data(request)
    require(data.get('requesterRole'), 'database.manage')

    allow_duplicates = get_state().dealer.select_active(data.get('dbId'), as_bool(data.get('allowDuplicates')))
    return JsonResponse({'success': True, 'allowDuplicates': allow_duplicates})


@require_http_methods(["GET"])
@api_view
def get_row(request):
    return JsonResponse(get_state().dealer.deal_row())
