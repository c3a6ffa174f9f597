from __future__ import annotations

import logging

from cbt.models.session import Session, SessionStatus
from cbt.models.user import User
from cbt.services.audit import AuditSink
from cbt.services.lookup import get_owned_session, get_session
from cbt.services.notifications import (
    SESSION_FORCE_SUBMITTED,
    SESSION_LOCKED,
    SESSION_UNLOCKED,
    Notifier,
    session_room,
)
from cbt.services.scoring import ScoreResult, score_submission
from cbt.utils.base import AuditAction, ConflictError, Severity, utc_now


logger = logging.getLogger(__name__)

DEFAULT_LOCK_REASON = "Locked by teacher"
DEFAULT_FORCE_SUBMIT_REASON = "Force submitted by teacher"


class SessionControl:
    """Invigilator actions on a single session; only the exam's owning teacher may use them."""

    def __init__(self, notifier: Notifier, audit: AuditSink):
        self.notifier = notifier
        self.audit = audit

    def _set_lock(self, teacher: User, session_id: str, locked: bool, reason: str | None) -> Session:
        session, exam = get_owned_session(teacher, session_id)
        if session.status != SessionStatus.ONGOING.value:
            raise ConflictError("Only ongoing sessions can be locked or unlocked", record=session.to_output())

        updated: Session | None = Session.objects(id=session.id, status=SessionStatus.ONGOING.value).modify(
            new=True,
            inc__revision=1,
            set__is_locked=locked,
            set__lock_reason=reason,
            set__updated_at=utc_now(),
        )
        if updated is None:
            raise ConflictError("Session is no longer ongoing", record=get_session(session.id).to_output())

        if locked:
            event, message = SESSION_LOCKED, "Your exam has been locked by the teacher"
        else:
            event, message = SESSION_UNLOCKED, "Your exam has been unlocked by the teacher"
        self.notifier.publish(
            session_room(updated.id),
            event,
            {"session_id": str(updated.id), "reason": reason, "message": message},
        )
        self.audit.record(
            AuditAction.SESSION_LOCKED if locked else AuditAction.SESSION_UNLOCKED,
            teacher,
            {"exam_id": str(exam.id), "session_id": str(updated.id), "reason": reason},
            Severity.MEDIUM,
        )
        logger.info("Session %s %s by teacher %s", updated.id, "locked" if locked else "unlocked", teacher.id)
        return updated

    def lock(self, teacher: User, session_id: str, reason: str | None = None) -> Session:
        return self._set_lock(teacher, session_id, True, reason or DEFAULT_LOCK_REASON)

    def unlock(self, teacher: User, session_id: str) -> Session:
        return self._set_lock(teacher, session_id, False, None)

    def force_submit(
        self, teacher: User, session_id: str, reason: str | None = None
    ) -> tuple[Session, ScoreResult]:
        """Score whatever answers exist and terminate the session.

        Completed sessions are final. Terminated ones (e.g. by an exam end) may be
        force-submitted again, which rescores the same saved answers.
        """
        session, exam = get_owned_session(teacher, session_id)
        if session.status == SessionStatus.COMPLETED.value:
            raise ConflictError("Session already completed", record=session.to_output())

        result = score_submission(exam, session.answers)
        reason = reason or DEFAULT_FORCE_SUBMIT_REASON
        now = utc_now()
        updated: Session | None = Session.objects(
            id=session.id, status__ne=SessionStatus.COMPLETED.value
        ).modify(
            new=True,
            inc__revision=1,
            set__status=SessionStatus.TERMINATED.value,
            set__is_locked=True,
            set__lock_reason=reason,
            set__end_time=now,
            set__updated_at=now,
            set__score=result.total_score,
            set__percentage=result.percentage,
            set__correct_count=result.correct_count,
            set__wrong_count=result.wrong_count,
            set__manual_grades={},
        )
        if updated is None:
            # The student's submit landed first
            raise ConflictError("Session already completed", record=get_session(session.id).to_output())

        logger.info("Session %s force submitted by teacher %s: %s", updated.id, teacher.id, reason)
        self.notifier.publish(
            session_room(updated.id),
            SESSION_FORCE_SUBMITTED,
            {
                "session_id": str(updated.id),
                "reason": reason,
                "message": "Your exam has been submitted by the teacher",
            },
        )
        self.audit.record(
            AuditAction.EXAM_TERMINATED,
            teacher,
            {
                "exam_id": str(exam.id),
                "session_id": str(updated.id),
                "reason": reason,
                "score": result.total_score,
            },
            Severity.HIGH,
        )
        return updated, result
