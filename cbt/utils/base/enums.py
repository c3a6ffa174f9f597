from enum import Enum


class BaseEnum(Enum):
    @classmethod
    def choices(cls):
        return [(item.value, item.name) for item in cls]

    @classmethod
    def values(cls) -> list[str]:
        return [item.value for item in cls]


class UserRole(BaseEnum):
    STUDENT = "student"
    TEACHER = "teacher"
    ADMIN = "admin"


class AuditAction(BaseEnum):
    EXAM_CREATED = "EXAM_CREATED"
    EXAM_UPDATED = "EXAM_UPDATED"
    EXAM_DELETED = "EXAM_DELETED"
    EXAM_STARTED = "EXAM_STARTED"
    EXAM_ENDED = "EXAM_ENDED"
    EXAM_SESSION_START = "EXAM_SESSION_START"
    EXAM_SUBMIT = "EXAM_SUBMIT"
    EXAM_VIOLATION = "EXAM_VIOLATION"
    EXAM_TERMINATED = "EXAM_TERMINATED"
    SESSION_LOCKED = "SESSION_LOCKED"
    SESSION_UNLOCKED = "SESSION_UNLOCKED"
    GRADE_SUBMITTED = "GRADE_SUBMITTED"


class Severity(BaseEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
