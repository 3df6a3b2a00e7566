"""Error taxonomy shared by the REST routes and the websocket loop.

Core operations raise these; the transport decides how to render them
(`{"error", "reason"}` JSON with the matching status code for HTTP, a scoped
`error` frame for the websocket).
"""


class ChatError(Exception):

    status_code = 500
    reason = 'ServerError'
    default_message = 'Server error'

    def __init__(self, message=None, reason=None):
        self.message = message or self.default_message
        if reason:
            self.reason = reason
        super().__init__(self.message)

    def to_dict(self):
        return {'error': self.message, 'reason': self.reason}


class ValidationError(ChatError):
    status_code = 400
    reason = 'ValidationError'
    default_message = 'Invalid request'


class InvalidOperationError(ChatError):
    status_code = 400
    reason = 'InvalidOperation'
    default_message = 'Invalid operation'


class AuthError(ChatError):
    status_code = 401
    reason = 'AuthError'
    default_message = 'Invalid or expired token'


class AuthorizationError(ChatError):
    status_code = 403
    reason = 'Forbidden'
    default_message = 'Not allowed'


class NotFoundError(ChatError):
    status_code = 404
    reason = 'NotFound'
    default_message = 'Not found'


class ConflictError(ChatError):
    status_code = 409
    reason = 'Conflict'
    default_message = 'Already exists'


class ServerError(ChatError):
    pass


def coerce_id(value, field):
    """Return `value` as a positive int id or raise ValidationError."""
    if isinstance(value, bool) or value is None or value == '':
        raise ValidationError(f'{field} required')
    try:
        ident = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be an integer')
    if ident <= 0:
        raise ValidationError(f'{field} must be positive')
    return ident
