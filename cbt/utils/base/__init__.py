from cbt.utils.base.clock import ensure_utc, utc_now
from cbt.utils.base.enums import AuditAction, BaseEnum, Severity, UserRole
from cbt.utils.base.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PreconditionFailedError,
    ServiceError,
    SessionLockedError,
)

__all__ = [
    "AuditAction",
    "BaseEnum",
    "ConflictError",
    "ForbiddenError",
    "NotFoundError",
    "PreconditionFailedError",
    "ServiceError",
    "SessionLockedError",
    "Severity",
    "UserRole",
    "ensure_utc",
    "utc_now",
]
