from typing import Any


class ServiceError(Exception):
    """Base error raised by the exam/session services.

    Carries the HTTP status the API layer answers with and, optionally, the
    record the client needs to reconcile its view (e.g. the existing session
    when a retake is refused).
    """
    status_code: int = 400

    def __init__(self, detail: str, record: Any = None):
        super().__init__(detail)
        self.detail = detail
        self.record = record


class NotFoundError(ServiceError):
    status_code = 404


class ForbiddenError(ServiceError):
    status_code = 403


class ConflictError(ServiceError):
    status_code = 409


class PreconditionFailedError(ServiceError):
    status_code = 400


class SessionLockedError(ServiceError):
    status_code = 423
