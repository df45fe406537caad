import json
import logging
from functools import wraps

from django.http import JsonResponse

from .exceptions import BookingError, ValidationError

logger = logging.getLogger(__name__)


def json_endpoint(view):
    """Render ``BookingError`` subclasses as ``{'error': ..., 'code': ...}``."""
    @wraps(view)
    def wrapper(request, *args, **kwargs):
        try:
            return view(request, *args, **kwargs)
        except BookingError as exc:
            level = logging.ERROR if exc.status_code >= 500 else logging.INFO
            logger.log(level, '%s %s failed: %s (%s)', request.method, request.path, exc.message, exc.code)
            return JsonResponse(exc.as_dict(), status=exc.status_code)
    return wrapper


def read_json(request):
    try:
        data = json.loads(request.body or b'{}')
    except json.JSONDecodeError:
        raise ValidationError('Invalid JSON')
    if not isinstance(data, dict):
        raise ValidationError('Expected a JSON object')
    return data


def validated(serializer_class, data):
    serializer = serializer_class(data=data)
    if not serializer.is_valid():
        raise ValidationError('Invalid request', errors=serializer.errors)
    return serializer.validated_data
