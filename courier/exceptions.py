"""
Error taxonomy for the courier core.

Every error carries a human readable ``detail``, a machine readable ``code``
and the HTTP status the API layer answers with. Service functions raise
these; views translate them into responses.
"""


class CourierError(Exception):
    """Base class for all courier core errors."""

    status_code = 500
    default_detail = 'An unexpected error occurred.'
    default_code = 'error'

    def __init__(self, detail=None, code=None):
        self.detail = detail if detail is not None else self.default_detail
        self.code = code if code is not None else self.default_code
        super().__init__(self.detail)

    def as_dict(self):
        return {'detail': str(self.detail), 'code': self.code}


class ValidationError(CourierError):
    """
    Malformed input: empty or too long message, out-of-range score,
    unknown handoff step.

    Recoverable locally; never retried automatically.
    """

    status_code = 400
    default_detail = 'Invalid input.'
    default_code = 'invalid'


class ConflictError(CourierError):
    """
    Invariant violation under concurrency: duplicate rating, stale handoff
    transition, booking not in a chat-enabled status.

    Clients should refresh their state instead of retrying blindly.
    """

    status_code = 409
    default_detail = 'The resource changed state.'
    default_code = 'conflict'


class StorageError(CourierError):
    """Persistence failure. Transient; the whole operation may be retried."""

    status_code = 503
    default_detail = 'Storage is temporarily unavailable.'
    default_code = 'storage_error'


class NotFoundError(CourierError):
    """
    Referenced booking, message or rating does not exist or is not visible
    to the caller. Authorization gaps collapse into this error so the
    existence of other users' bookings never leaks.
    """

    status_code = 404
    default_detail = 'Not found.'
    default_code = 'not_found'


class PermissionDeniedError(CourierError):
    """Caller takes part in the booking but is the wrong party for the action."""

    status_code = 403
    default_detail = 'You do not have permission to perform this action.'
    default_code = 'permission_denied'
