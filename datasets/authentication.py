# datasets/authentication.py
"""
Signed-request authentication for the gateway.

A request proves its principal by carrying `address`, `timestamp` and a
wallet `signature` over

    synergy:v1:<action>:<canonical_json(args)>:<timestamp>

where `args` is the request payload (JSON body, or query string for GETs)
without the three auth fields, plus the URL path parameters. The action name
comes from the view, so a signature for one endpoint never validates on
another.
"""
import logging
import time

from django.conf import settings
from rest_framework import authentication, exceptions, permissions

from .crypto import canonical_message, normalize_address, verify
from .errors import BadRequest

logger = logging.getLogger(__name__)

AUTH_FIELDS = ('address', 'signature', 'timestamp')


def current_timestamp():
    return int(time.time())


class SignedPrincipal:
    """The verified caller; stands in for request.user."""
    is_authenticated = True
    is_anonymous = False

    def __init__(self, address):
        self.address = address

    def __str__(self):
        return self.address


def request_payload(request):
    if request.method in permissions.SAFE_METHODS:
        return request.query_params
    return request.data


def signed_args(request, path_kwargs):
    payload = request_payload(request)
    args = {key: payload.get(key) for key in payload.keys() if key not in AUTH_FIELDS}
    # query strings carry network_id as text; sign it as a number either way
    if isinstance(args.get('network_id'), str) and args['network_id'].isdigit():
        args['network_id'] = int(args['network_id'])
    args.update(path_kwargs)
    return args


class SignedRequestAuthentication(authentication.BaseAuthentication):

    def authenticate(self, request):
        payload = request_payload(request)
        address = payload.get('address')
        signature = payload.get('signature')
        timestamp = payload.get('timestamp')
        if not address and not signature:
            return None
        if not (address and signature and timestamp is not None):
            raise exceptions.AuthenticationFailed('Signed requests need address, signature and timestamp')

        try:
            address = normalize_address(address)
            timestamp = int(timestamp)
        except (BadRequest, TypeError, ValueError):
            raise exceptions.AuthenticationFailed('Malformed address or timestamp') from None

        window = settings.REPLAY_WINDOW_SECONDS
        age = current_timestamp() - timestamp
        if abs(age) > window:
            logger.warning('Rejected request from %s: timestamp %ss outside %ss window', address, age, window)
            raise exceptions.AuthenticationFailed('Request timestamp outside the replay window')

        context = request.parser_context or {}
        view = context.get('view')
        action = view.get_signed_action(request) if view is not None else None
        if not action:
            raise exceptions.AuthenticationFailed('Endpoint does not accept signed requests')
        message = canonical_message(action, signed_args(request, context.get('kwargs') or {}), timestamp)
        if not verify(address, message, signature):
            logger.warning('Rejected %s request: signature does not match %s', action, address)
            raise exceptions.AuthenticationFailed('Invalid signature')
        return SignedPrincipal(address), None

    def authenticate_header(self, request):
        return 'Signature realm="synergy"'


class IsSignedPrincipal(permissions.BasePermission):
    message = 'A signed request is required'

    def has_permission(self, request, view):
        return isinstance(request.user, SignedPrincipal)


class SignedRequestMixin:
    """
    View mixin: authenticate with a signature over `signed_action` and
    require it. Views that also serve anonymous readers swap the
    permission classes.
    """
    authentication_classes = [SignedRequestAuthentication]
    permission_classes = [IsSignedPrincipal]
    signed_action = None

    def get_signed_action(self, request):
        return self.signed_action

    @property
    def sender(self):
        user = self.request.user
        return user.address if isinstance(user, SignedPrincipal) else None
