"""
Helpers shared by the JSON views of both apps.
"""

import logging
from functools import wraps

import orjson as json
from django.http import JsonResponse

from call_center.exceptions import CRMError, ValidationError

logger = logging.getLogger(__name__)


def api_view(view):
    """Answer CRMError with {'success': False, 'error': code} and its HTTP status."""
    @wraps(view)
    def wrapper(request, *args, **kwargs):
        try:
            return view(request, *args, **kwargs)
        except CRMError as e:
            return JsonResponse({'success': False, 'error': e.code}, status=e.status)
        except Exception as e:
            logger.exception(f"Error in {view.__name__}: {str(e)}")
            return JsonResponse({'success': False, 'error': 'internal_error'}, status=500)
    return wrapper


def json_list(items):
    return JsonResponse(items, safe=False)


def request_data(request):
    """
    Request fields as a dict: the JSON body, or the form fields of a
    urlencoded / multipart request (PUT included).
    """
    if request.content_type == 'application/json':
        if not request.body:
            return {}
        try:
            data = json.loads(request.body)
        except json.JSONDecodeError:
            raise ValidationError('invalid_json')
        if not isinstance(data, dict):
            raise ValidationError('bad_request')
        return data

    if request.method == 'PUT' and request.content_type == 'multipart/form-data':
        # Django only parses multipart bodies for POST
        request.POST, request._files = request.parse_file_upload(request.META, request)

    return request.POST.dict()


def uploaded_file(request, field='file'):
    return request.FILES.get(field)


def store_upload(state, request, field='file'):
    """Persist the request's file (if any) and return its /uploads/ reference."""
    upload = uploaded_file(request, field)
    if upload is None:
        return None
    return state.uploads.save(upload)


def as_bool(value):
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)
