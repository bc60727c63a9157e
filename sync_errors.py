"""Exception types raised by the sheet sync engine."""


class SyncError(Exception):
    """Base class for every failure surfaced by the sync engine."""

    cancelled = False

    def __init__(self, message, status=None, code=None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code

    def __str__(self):
        return self.message


class ConfigError(SyncError):
    """Raised when required settings are missing from the environment."""


class ValidationError(SyncError):
    """Local input problem detected before anything is sent to Salesforce."""

    def __init__(self, code, message=None):
        super().__init__(message or code, code=code)


class RemoteError(SyncError):
    """Salesforce answered with a non-2xx status or the transport failed."""


class AuthenticationError(RemoteError):
    """The session expired or was rejected while a call was in flight."""


class ProtocolError(SyncError):
    """Salesforce answered 2xx but the payload is missing or unusable."""


class AbortError(SyncError):
    """The caller cancelled the operation or a newer input superseded it."""

    cancelled = True

    def __init__(self, message="Request was cancelled"):
        super().__init__(message, code="ABORTED")


class RequestTimeoutError(SyncError):
    """The call did not finish before its deadline."""

    cancelled = True

    def __init__(self, message="Request timed out"):
        super().__init__(message, code="TIMED_OUT")
