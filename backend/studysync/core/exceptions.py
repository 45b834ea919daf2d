class StudySyncError(Exception):
    """Base class for session engine errors."""

    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.__doc__)
        self.message = message or (self.__doc__ or "").strip()


class ActiveSessionExists(StudySyncError):
    """User already has an active session"""

    status_code = 409


class NoActiveSession(StudySyncError):
    """No active session found"""

    status_code = 404


class UserNotFound(StudySyncError):
    """User not found"""

    status_code = 404


class StoreUnavailable(StudySyncError):
    """Backing store is unavailable"""

    status_code = 503


class ConcurrentModificationLost(StudySyncError):
    """Concurrent update won the race; re-fetch and retry"""

    status_code = 409


class InvalidWeekKey(StudySyncError):
    """Week must look like YYYY-Www"""

    status_code = 400
