from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Mapping

from mongoengine import NotUniqueError

from cbt.models.base import reference_id
from cbt.models.exam import Exam, ExamStatus
from cbt.models.session import Session, SessionStatus
from cbt.models.user import User
from cbt.services.audit import AuditSink
from cbt.services.lookup import get_exam, get_owned_session, get_session, get_student_session
from cbt.services.notifications import SESSION_EXPIRED, Notifier, session_room
from cbt.services.scheduler import DeferredJobs
from cbt.services.scoring import ScoreResult, apply_manual_grades, score_submission
from cbt.services.student_records import sync_subject_score
from cbt.utils.base import (
    AuditAction,
    ConflictError,
    ForbiddenError,
    PreconditionFailedError,
    SessionLockedError,
    Severity,
    ensure_utc,
    utc_now,
)
from cbt.utils.config import settings


logger = logging.getLogger(__name__)

GRADE_RETRIES = 3

RecordSync = Callable[[User, str, float], Any]


def session_deadline(exam: Exam, start_time: datetime) -> datetime:
    """Start + duration, cut short by the exam's own end time."""
    deadline = start_time + timedelta(minutes=exam.duration_minutes)
    end_time = ensure_utc(exam.end_time)
    if end_time is not None and end_time < deadline:
        return end_time
    return deadline


def _normalize_answers(answers: Mapping[Any, Any]) -> dict[str, Any]:
    normalized = {}
    for key, value in answers.items():
        if not str(key).isdigit():
            raise PreconditionFailedError(f"Answers must be keyed by question index, got {key!r}")
        normalized[str(int(key))] = value
    return normalized


def _answer_updates(answers: Mapping[Any, Any]) -> dict[str, Any]:
    # Per-key $set; answers not sent keep their saved value
    return {f"answers.{key}": value for key, value in _normalize_answers(answers).items()}


def _score_updates(result: ScoreResult) -> dict[str, Any]:
    return {
        "set__score": result.total_score,
        "set__percentage": result.percentage,
        "set__correct_count": result.correct_count,
        "set__wrong_count": result.wrong_count,
    }


class ExamSessionService:
    """Student-side session lifecycle: admission, autosave, submission, expiry and regrading.

    Every write is a conditional single-document update on the session
    (`status=ongoing`, `is_locked=False`, or the session revision), so a
    student's submit, a teacher's force-submit and the expiry job cannot
    overwrite each other.
    """

    def __init__(
        self,
        notifier: Notifier,
        audit: AuditSink,
        jobs: DeferredJobs | None = None,
        record_sync: RecordSync = sync_subject_score,
    ):
        self.notifier = notifier
        self.audit = audit
        self.jobs = jobs
        self.record_sync = record_sync

    def start(self, student: User, exam_id: str) -> tuple[Session, bool]:
        """Open or resume the student's session. Returns (session, created).

        Safe to retry: an ongoing session is returned as-is, lock state included.
        """
        exam = get_exam(exam_id)
        if not exam.is_active:
            raise PreconditionFailedError("Exam is not currently available")
        if exam.status != ExamStatus.ACTIVE.value:
            raise PreconditionFailedError("This exam has not been started by the teacher yet")
        if reference_id(exam, "school") != reference_id(student, "school"):
            raise ForbiddenError("Unauthorized: this exam is not for your school")
        if not exam.targets(student):
            raise ForbiddenError("Unauthorized: this exam is not for your class")

        existing: Session | None = Session.objects(user=student.id, exam=exam.id).first()
        if existing:
            return self._resume(existing), False

        now = utc_now()
        session = Session(
            user=student,
            exam=exam,
            start_time=now,
            expires_at=session_deadline(exam, now),
            status=SessionStatus.ONGOING.value,
        )
        try:
            session.save()
        except NotUniqueError:
            # A concurrent start for the same pair won the insert
            existing = Session.objects(user=student.id, exam=exam.id).first()
            return self._resume(existing), False

        logger.info("New session %s for student %s on exam %s", session.id, student.id, exam.id)
        self.audit.record(
            AuditAction.EXAM_SESSION_START,
            student,
            {"exam_id": str(exam.id), "title": exam.title, "session_id": str(session.id)},
            Severity.LOW,
        )
        self._schedule_expiry(session)
        return session, True

    @staticmethod
    def _resume(session: Session) -> Session:
        if session.is_final:
            raise ConflictError("You have already taken this exam and cannot retake it", record=session.to_output())
        logger.info(
            "Resuming session %s for student %s (locked=%s)", session.id, session.user_id, session.is_locked
        )
        return session

    def _schedule_expiry(self, session: Session) -> None:
        if self.jobs is None or session.expires_at is None:
            return
        run_at = ensure_utc(session.expires_at) + timedelta(seconds=settings.time_limit_grace_seconds)
        try:
            self.jobs.expire_session_at(run_at, str(session.id))
        except Exception:
            logger.exception("Could not schedule expiry of session %s", session.id)

    @staticmethod
    def _ensure_writable(session: Session, check_expiry: bool = True) -> None:
        if session.is_final:
            raise ConflictError("This exam session has already been submitted", record=session.to_output())
        if session.is_locked:
            raise SessionLockedError(session.lock_reason or "Your exam is locked", record=session.to_output())
        if check_expiry and session.is_expired():
            raise PreconditionFailedError("Time is up for this exam")

    def save_answers(self, student: User, session_id: str, answers: Mapping[str, Any]) -> Session:
        """Autosave: merge `answers` into the ongoing session."""
        session = get_student_session(student, session_id)
        self._ensure_writable(session)
        updates = _answer_updates(answers)
        if not updates:
            return session

        updated: Session | None = Session.objects(
            id=session.id, status=SessionStatus.ONGOING.value, is_locked=False
        ).modify(new=True, __raw__={"$set": {**updates, "updated_at": utc_now()}, "$inc": {"revision": 1}})
        if updated is None:
            self._ensure_writable(get_session(session.id), check_expiry=False)
            raise ConflictError("Session changed while saving, please retry")
        return updated

    def submit(
        self, student: User, session_id: str, answers: Mapping[str, Any] | None = None
    ) -> tuple[Session, ScoreResult]:
        """Score and complete the session. A second submit is a conflict, never a rescore."""
        session = get_student_session(student, session_id)
        self._ensure_writable(session, check_expiry=False)

        expires_at = ensure_utc(session.expires_at)
        grace = timedelta(seconds=settings.time_limit_grace_seconds)
        if answers is None:
            final_answers = dict(session.answers or {})
        elif expires_at is not None and utc_now() > expires_at + grace:
            logger.warning("Late submit on session %s; scoring the saved answers", session.id)
            final_answers = dict(session.answers or {})
        else:
            final_answers = _normalize_answers(answers)

        exam = get_exam(session.exam_id)
        result = score_submission(exam, final_answers)
        now = utc_now()
        updated: Session | None = Session.objects(
            id=session.id, status=SessionStatus.ONGOING.value, is_locked=False
        ).modify(
            new=True,
            inc__revision=1,
            set__answers=final_answers,
            set__status=SessionStatus.COMPLETED.value,
            set__end_time=now,
            set__updated_at=now,
            **_score_updates(result),
        )
        if updated is None:
            self._ensure_writable(get_session(session.id), check_expiry=False)
            raise ConflictError("Session changed while submitting, please retry")

        logger.info(
            "Session %s submitted: score=%.2f/%.2f (%.2f%%)",
            updated.id, result.total_score, result.total_possible_marks, result.percentage,
        )
        self._after_completion(student, exam, updated, result)
        return updated, result

    def _after_completion(self, student: User, exam: Exam, session: Session, result: ScoreResult) -> None:
        self.audit.record(
            AuditAction.EXAM_SUBMIT,
            student,
            {
                "exam_id": str(exam.id),
                "title": exam.title,
                "session_id": str(session.id),
                "score": result.total_score,
                "percentage": result.percentage,
            },
            Severity.MEDIUM,
        )
        try:
            self.record_sync(student, exam.subject, result.percentage)
        except Exception:
            logger.exception("Student record sync failed for session %s", session.id)

    def expire(self, session_id: str) -> Session | None:
        """Time box job: auto-submit the saved answers of a session past its deadline."""
        session: Session | None = Session.objects(id=session_id).first()
        if not session or session.status != SessionStatus.ONGOING.value or not session.is_expired():
            return None

        exam = get_exam(session.exam_id)
        result = score_submission(exam, session.answers)
        now = utc_now()
        updated: Session | None = Session.objects(id=session.id, status=SessionStatus.ONGOING.value).modify(
            new=True,
            inc__revision=1,
            set__status=SessionStatus.COMPLETED.value,
            set__end_time=now,
            set__updated_at=now,
            **_score_updates(result),
        )
        if updated is None:
            return None

        logger.info("Session %s expired and was auto-submitted", updated.id)
        self.notifier.publish(
            session_room(updated.id),
            SESSION_EXPIRED,
            {
                "session_id": str(updated.id),
                "score": result.total_score,
                "message": "Time is up. Your saved answers have been submitted",
            },
        )
        self._after_completion(updated.user, exam, updated, result)
        return updated

    def update_manual_grades(
        self, teacher: User, session_id: str, grades: Iterable[tuple[int, float]]
    ) -> Session:
        """Apply teacher marks per question by delta against the previously awarded marks."""
        grades = list(grades)
        session, exam = get_owned_session(teacher, session_id)
        for question_index, marks_earned in grades:
            if not 0 <= question_index < len(exam.questions):
                raise PreconditionFailedError(f"Question {question_index} does not exist in this exam")
            if marks_earned < 0:
                raise PreconditionFailedError("Marks cannot be negative")

        for _ in range(GRADE_RETRIES):
            if not session.is_final:
                raise ConflictError("Only submitted sessions can be graded")
            score, percentage, merged = apply_manual_grades(
                session.score, session.manual_grades, grades, exam.total_marks
            )
            updated: Session | None = Session.objects(id=session.id, revision=session.revision).modify(
                new=True,
                inc__revision=1,
                set__score=score,
                set__percentage=percentage,
                set__manual_grades=merged,
                set__updated_at=utc_now(),
            )
            if updated is not None:
                self.audit.record(
                    AuditAction.GRADE_SUBMITTED,
                    teacher,
                    {"exam_id": str(exam.id), "session_id": str(session.id), "score": score},
                    Severity.MEDIUM,
                )
                return updated
            session = get_session(session.id)

        raise ConflictError("Session is being updated concurrently, please retry")
