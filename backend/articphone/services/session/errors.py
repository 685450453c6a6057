"""Errors raised by the room session engine.

Validation failures are reported to whoever triggered them and never leave a
partial write behind. Races (duplicate submissions, duplicate round
advances) are not errors at all; they are absorbed by the store's
fill-once and conditional writes.
"""


class SessionError(Exception):
    """Base class for every error surfaced to a participant."""
    error = 'session_error'
    status = 400

    def __init__(self, message=None):
        super().__init__(message or self.error)
        self.message = message or self.error

    def to_dict(self):
        return {'error': self.error, 'message': self.message}


class ValidationError(SessionError):
    error = 'invalid_request'
    status = 400

    def __init__(self, error, message=None, status=None):
        self.error = error
        if status is not None:
            self.status = status
        super().__init__(message or error)


class RoomNotFound(SessionError):
    error = 'room_not_found'
    status = 404

    def __init__(self, room_code):
        self.room_code = room_code
        super().__init__(f"Room {room_code} not found")


class NotHost(SessionError):
    error = 'not_host'
    status = 403


class NotAPlayer(SessionError):
    error = 'not_a_player'
    status = 403


class StoreUnavailable(SessionError):
    """The shared state store failed to read or write."""
    error = 'store_unavailable'
    status = 503
