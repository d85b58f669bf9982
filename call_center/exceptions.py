"""
Error taxonomy shared by the leads and crm apps.

Each error carries a stable machine-readable code and the HTTP status the
views answer with.
"""


class CRMError(Exception):
    status = 500
    default_code = 'error'

    def __init__(self, code=None, message=None):
        self.code = code or self.default_code
        super().__init__(message or self.code)


class ValidationError(CRMError):
    status = 400
    default_code = 'bad_request'


class AuthorizationError(CRMError):
    status = 403
    default_code = 'forbidden'


class NotFoundError(CRMError):
    status = 404
    default_code = 'not_found'


class TransitionError(CRMError):
    status = 409
    default_code = 'invalid_transition'


class ServiceBusyError(CRMError):
    status = 503
    default_code = 'busy'


class PersistenceError(CRMError):
    """A collection could not be written and self-healing did not apply."""
    status = 500
    default_code = 'persistence_failed'


class AuthenticationError(CRMError):
    status = 401
    default_code = 'invalid_credentials'
