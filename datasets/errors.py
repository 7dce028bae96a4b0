# datasets/errors.py
"""
Typed error taxonomy shared by every layer of the dataset envelope.

Each error carries the HTTP status the gateway answers with, so the views
never have to guess.
"""


class EnvelopeError(Exception):
    status_code = 500
    code = 'internal'
    retryable = False

    def __init__(self, message='', **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def wrap(self, context):
        """Return a copy of this error with `context` prepended to the message."""
        wrapped = self.__class__(f'{context}: {self.message}', **self.details)
        wrapped.__cause__ = self
        return wrapped


class BadRequest(EnvelopeError):
    status_code = 400
    code = 'bad_request'


class BadRecipient(BadRequest):
    code = 'bad_recipient'


class BadKey(BadRequest):
    code = 'bad_key'


class Unauthorized(EnvelopeError):
    status_code = 401
    code = 'unauthorized'


class Forbidden(EnvelopeError):
    status_code = 403
    code = 'forbidden'


class NotFound(EnvelopeError):
    status_code = 404
    code = 'not_found'


class Conflict(EnvelopeError):
    status_code = 409
    code = 'conflict'


class Gone(EnvelopeError):
    status_code = 410
    code = 'gone'


class Busy(EnvelopeError):
    status_code = 429
    code = 'busy'
    retryable = True


class Internal(EnvelopeError):
    status_code = 500
    code = 'internal'


class Unavailable(EnvelopeError):
    status_code = 503
    code = 'unavailable'
    retryable = True


class DeadlineExceeded(Unavailable):
    """The request deadline passed while a write was in flight; its outcome is unknown."""
    code = 'deadline_exceeded'
    retryable = False


# Revert reasons emitted by the registry contract.
REVERT_REASONS = {
    'BadRequest': BadRequest,
    'Forbidden': Forbidden,
    'NotFound': NotFound,
    'Conflict': Conflict,
    'Gone': Gone,
}


def from_revert(reason):
    """Map a contract revert string like 'Forbidden: not admin' to a typed error."""
    text = (reason or '').strip()
    if text.startswith('execution reverted'):
        text = text[len('execution reverted'):].lstrip(' :')
    name, _, rest = text.partition(':')
    name = name.strip()
    error_class = REVERT_REASONS.get(name, Internal)
    return error_class(rest.strip() or name or 'transaction reverted')
