"""Proctoring violation ingestion and the auto-lock policy.

A violation is appended atomically; the lock decision is then derived from
the incoming event plus the full violation list, and the lock itself is a
conditional update on `is_locked=False`, so two racing events lock (and
notify) at most once.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from cbt.models.session import Session, SessionStatus, Violation
from cbt.models.user import User
from cbt.services.audit import AuditSink
from cbt.services.lookup import get_exam, get_owned_exam, get_owned_session, get_student_session
from cbt.services.notifications import (
    SESSION_LOCKED,
    VIOLATION_LOGGED,
    Notifier,
    monitor_room,
    session_room,
)
from cbt.utils.base import AuditAction, NotFoundError, PreconditionFailedError, Severity, utc_now
from cbt.utils.config import settings


logger = logging.getLogger(__name__)

TAB_SWITCH = "tab_switch"
TALKING_TYPES = frozenset({"excessive_talking", "sustained_talking"})
SCREEN_SHARE_STOPPED = "screen_share_stopped"
LOCKED_PREFIX = "LOCKED:"
CRITICAL_TYPES = frozenset({"face_not_visible", "multiple_faces", "excessive_talking"})


@dataclass(frozen=True)
class LockDecision:
    reason: str
    message: str


def lock_decision(
    incoming: str,
    violation_types: Iterable[str],
    talking_threshold: int | None = None,
) -> LockDecision | None:
    """Whether the `incoming` violation should lock a currently unlocked session.

    `violation_types` is the full list, the incoming one included.
    """
    threshold = settings.talking_lock_threshold if talking_threshold is None else talking_threshold

    if incoming == TAB_SWITCH:
        return LockDecision("Tab switch detected - exam locked", "Your exam has been locked due to tab switching")

    if incoming in TALKING_TYPES:
        talking = sum(1 for t in violation_types if t in TALKING_TYPES)
        if talking >= threshold:
            return LockDecision(
                f"Excessive talking - {talking} violations detected",
                "Your exam has been locked due to excessive talking",
            )
        return None

    if incoming.startswith(LOCKED_PREFIX):
        reason = incoming[len(LOCKED_PREFIX):].strip() or incoming
        return LockDecision(reason, "Your exam has been locked")

    if incoming == SCREEN_SHARE_STOPPED:
        return LockDecision(incoming, "Your exam has been locked because screen sharing stopped")

    return None


def violation_summary(session: Session) -> dict:
    types = [v.type for v in session.violations]
    return {
        "session_id": str(session.id),
        "violations": [v.to_output() for v in session.violations],
        "violations_count": len(types),
        "critical_violations": sum(1 for t in types if t in CRITICAL_TYPES),
        "is_locked": session.is_locked,
        "lock_reason": session.lock_reason,
        "status": session.status,
    }


class ProctoringMonitor:
    def __init__(self, notifier: Notifier, audit: AuditSink):
        self.notifier = notifier
        self.audit = audit

    def log_violation(
        self,
        student: User,
        session_id: str,
        violation_type: str,
        image_url: str | None = None,
    ) -> Session:
        violation_type = (violation_type or "").strip()
        if not violation_type:
            raise PreconditionFailedError("Violation type is required")

        session = get_student_session(student, session_id)
        violation = Violation(type=violation_type, timestamp=utc_now(), image_url=image_url)
        updated: Session | None = Session.objects(id=session.id).modify(
            new=True, push__violations=violation, inc__revision=1, set__updated_at=utc_now()
        )
        if updated is None:
            raise NotFoundError("Session not found")

        if not updated.is_locked and updated.status == SessionStatus.ONGOING.value:
            decision = lock_decision(violation_type, [v.type for v in updated.violations])
            if decision is not None:
                updated = self._auto_lock(updated, decision)

        logger.info(
            "Violation on session %s: %s (locked=%s, total=%s)",
            updated.id, violation_type, updated.is_locked, len(updated.violations),
        )
        self.notifier.publish(
            monitor_room(updated.exam_id),
            VIOLATION_LOGGED,
            {
                "session_id": str(updated.id),
                "student_id": str(student.id),
                "type": violation_type,
                "is_locked": updated.is_locked,
                "violations_count": len(updated.violations),
            },
        )
        self.audit.record(
            AuditAction.EXAM_VIOLATION,
            student,
            {
                "session_id": str(updated.id),
                "exam_id": str(updated.exam_id),
                "violation_type": violation_type,
                "is_locked": updated.is_locked,
            },
            Severity.CRITICAL if violation_type.startswith(LOCKED_PREFIX) else Severity.HIGH,
        )
        return updated

    def _auto_lock(self, session: Session, decision: LockDecision) -> Session:
        locked: Session | None = Session.objects(
            id=session.id, is_locked=False, status=SessionStatus.ONGOING.value
        ).modify(new=True, set__is_locked=True, set__lock_reason=decision.reason, inc__revision=1)
        if locked is None:
            # Another event or the teacher got there first
            return Session.objects(id=session.id).first() or session

        logger.info("Session %s auto-locked: %s", locked.id, decision.reason)
        self.notifier.publish(
            session_room(locked.id),
            SESSION_LOCKED,
            {"session_id": str(locked.id), "reason": decision.reason, "message": decision.message},
        )
        return locked

    @staticmethod
    def session_violations(teacher: User, session_id: str) -> dict:
        session, exam = get_owned_session(teacher, session_id)
        summary = violation_summary(session)
        summary["exam"] = {"id": str(exam.id), "title": exam.title}
        summary["student_id"] = str(session.user_id)
        return summary

    @staticmethod
    def exam_violations(teacher: User, exam_id: str) -> dict:
        exam = get_owned_exam(teacher, exam_id)
        sessions = Session.objects(exam=exam.id).order_by("-start_time")
        rows = []
        for session in sessions:
            row = violation_summary(session)
            row["student_id"] = str(session.user_id)
            row["start_time"] = session.start_time.isoformat() if session.start_time else None
            row["end_time"] = session.end_time.isoformat() if session.end_time else None
            rows.append(row)
        return {
            "exam": {"id": str(exam.id), "title": exam.title},
            "total_sessions": len(rows),
            "total_violations": sum(row["violations_count"] for row in rows),
            "sessions": rows,
        }

    @staticmethod
    def my_violations(student: User, exam_id: str) -> dict:
        exam = get_exam(exam_id)
        session: Session | None = Session.objects(user=student.id, exam=exam.id).first()
        if not session:
            raise NotFoundError("No session found")
        return violation_summary(session)
