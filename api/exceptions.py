import traceback

from django.conf import settings
from rest_framework.response import Response
from rest_framework.views import exception_handler

from .errors import PipelineError


def pipeline_exception_handler(exc, context):
    """Render PipelineError as {"error", "detail"}; defer everything else to DRF."""
    if not isinstance(exc, PipelineError):
        return exception_handler(exc, context)
    data = exc.as_dict()
    if settings.DEBUG:
        data["traceback"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return Response(data, status=exc.http_status)
