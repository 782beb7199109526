from typing import Optional


class SyncError(Exception):
    """Base class for classified session-synchronization failures."""

    status_code = 500
    code = 'sync_error'

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)

    def __str__(self):
        return self.message

    def to_dict(self):
        return {'error': self.message, 'code': self.code}


class NotFound(SyncError):
    """Referenced session or participant does not exist."""
    status_code = 404
    code = 'not_found'


class SessionGone(NotFound):
    """The remembered session no longer exists."""
    code = 'session_gone'


class SelfNotFound(NotFound):
    """No participant in the session matches this client's name."""
    code = 'self_not_found'


class Conflict(SyncError):
    """That name is already taken in this session."""
    status_code = 409
    code = 'conflict'


class CapacityExceeded(SyncError):
    """The session is full."""
    status_code = 409
    code = 'capacity_exceeded'


SessionFull = CapacityExceeded


class PreconditionFailed(SyncError):
    """The requested action is not allowed right now."""
    status_code = 400
    code = 'precondition_failed'


class SessionEnded(SyncError):
    """The session has already completed."""
    status_code = 410
    code = 'session_ended'


class Transient(SyncError):
    """The record store could not be reached; the call may be retried."""
    status_code = 503
    code = 'transient'


class AttachCancelled(SyncError):
    """The session was detached before attaching finished."""
    code = 'attach_cancelled'


_by_code = {cls.code: cls for cls in (
    NotFound, SessionGone, SelfNotFound, Conflict, CapacityExceeded,
    PreconditionFailed, SessionEnded, Transient,
)}


def error_from_response(status_code: int, body: Optional[dict]) -> SyncError:
    """Rebuild a typed error from a record-store API error response."""
    body = body or {}
    cls = _by_code.get(body.get('code'))
    if cls is None:
        if status_code == 404:
            cls = NotFound
        elif status_code == 409:
            cls = Conflict
        elif status_code == 410:
            cls = SessionEnded
        elif status_code >= 500:
            cls = Transient
        else:
            cls = PreconditionFailed
    return cls(body.get('error'))
