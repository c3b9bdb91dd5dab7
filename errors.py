from typing import Any, Optional


class CodemodRunError(Exception):
    """Base for every error the run service reports by code."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(CodemodRunError):
    code = "VALIDATION_ERROR"
    status_code = 400


class Unauthorized(CodemodRunError):
    code = "UNAUTHORIZED"
    status_code = 401

    def __init__(self, message: str = "Unauthorized", details: Optional[Any] = None):
        super().__init__(message, details)


class RateLimited(CodemodRunError):
    code = "RATE_LIMITED"
    status_code = 429


class QueueUnavailable(CodemodRunError):
    code = "QUEUE_UNAVAILABLE"
    status_code = 503


class StoreUnavailable(CodemodRunError):
    code = "STORE_UNAVAILABLE"
    status_code = 503


class EngineError(CodemodRunError):
    """The transform engine rejected the codemod or could not be started."""

    code = "ENGINE_ERROR"


class PerFileError(CodemodRunError):
    """A single file could not be transformed; the job keeps going."""

    code = "FILE_ERROR"

    def __init__(self, path: str, message: str):
        super().__init__(message)
        self.path = path


class RepositoryError(CodemodRunError):
    code = "REPOSITORY_ERROR"


class ProtocolError(CodemodRunError):
    """A run-protocol message was malformed or arrived in the wrong state."""

    code = "PROTOCOL_ERROR"


class WorkerCrashed(CodemodRunError):
    code = "WORKER_CRASHED"


class WorkerTimeout(WorkerCrashed):
    code = "WORKER_TIMEOUT"


class AuthUnavailable(CodemodRunError):
    code = "AUTH_UNAVAILABLE"
    status_code = 503
