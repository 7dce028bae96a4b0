# datasets/exceptions.py
import logging

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler

from .errors import EnvelopeError, Internal

logger = logging.getLogger(__name__)

DRF_ERROR_CODES = {
    status.HTTP_400_BAD_REQUEST: 'bad_request',
    status.HTTP_401_UNAUTHORIZED: 'unauthorized',
    status.HTTP_403_FORBIDDEN: 'forbidden',
    status.HTTP_404_NOT_FOUND: 'not_found',
    status.HTTP_405_METHOD_NOT_ALLOWED: 'method_not_allowed',
    status.HTTP_415_UNSUPPORTED_MEDIA_TYPE: 'unsupported_media_type',
    status.HTTP_429_TOO_MANY_REQUESTS: 'busy',
}


def envelope_exception_handler(exc, context):
    """
    Render every error as {'success': False, 'error': <code>, 'message': ...}.
    Internal errors never echo their message; only an orphan content id
    hint is passed through so operators can reconcile.
    """
    view = context.get('view')
    if isinstance(exc, EnvelopeError):
        body = {'success': False, 'error': exc.code, 'message': exc.message}
        headers = {}
        if isinstance(exc, Internal):
            logger.error('Internal error in %s: %s', type(view).__name__, exc.message, exc_info=exc)
            body['message'] = 'Internal error'
            if exc.details.get('orphan_content_id'):
                body['orphan_content_id'] = exc.details['orphan_content_id']
        elif exc.retryable:
            headers['Retry-After'] = '1'
        return Response(body, status=exc.status_code, headers=headers)

    response = exception_handler(exc, context)
    if response is not None:
        response.data = {
            'success': False,
            'error': DRF_ERROR_CODES.get(response.status_code, 'error'),
            'message': response.data,
        }
        return response

    logger.exception('Unhandled error in %s', type(view).__name__, exc_info=exc)
    return Response({'success': False, 'error': 'internal', 'message': 'Internal error'},
                    status=status.HTTP_500_INTERNAL_SERVER_ERROR)
