from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from mongoengine import ValidationError

from cbt.models.exam import Exam, ExamStatus, ExamType, ProctoringSettings, Question
from cbt.models.school import School
from cbt.models.session import Session, SessionStatus
from cbt.models.user import User
from cbt.services.audit import AuditSink
from cbt.services.entitlement import has_proctoring
from cbt.services.lookup import get_owned_exam
from cbt.services.notifications import EXAM_TERMINATED, Notifier, exam_room
from cbt.services.scheduler import DeferredJobs
from cbt.services.scoring import apply_manual_grades, score_submission
from cbt.utils.base import (
    AuditAction,
    ConflictError,
    ForbiddenError,
    PreconditionFailedError,
    Severity,
    ensure_utc,
    utc_now,
)


logger = logging.getLogger(__name__)

SCORE_RETRIES = 3

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    ExamStatus.SCHEDULED.value: {ExamStatus.SCHEDULED.value, ExamStatus.ACTIVE.value, ExamStatus.ENDED.value},
    ExamStatus.ACTIVE.value: {ExamStatus.ACTIVE.value, ExamStatus.ENDED.value},
    ExamStatus.ENDED.value: set(),
}

EDITABLE_FIELDS = (
    "title",
    "subject",
    "duration_minutes",
    "start_time",
    "end_time",
    "class_level",
    "groups",
    "access_code",
    "total_marks",
    "passing_score",
    "passing_percentage",
    "negative_marking",
)

PROCTORING_NOT_PERMITTED = (
    "Your current subscription plan does not support proctored exams. "
    "Please upgrade to a plan with proctoring."
)
ENDED_BY_TEACHER = "This exam has been ended by the teacher"
ENDED_ON_SCHEDULE = "This exam has ended"


def build_questions(questions: list[dict[str, Any]]) -> list[Question]:
    return [Question(**question) for question in questions]


class ExamLifecycle:
    """Exam authoring and the scheduled -> active -> ended state machine.

    Ending an exam is terminal and terminates every ongoing session of it.
    """

    def __init__(
        self,
        notifier: Notifier,
        audit: AuditSink,
        jobs: DeferredJobs | None = None,
        entitlement: Callable[[School | None], bool] = has_proctoring,
    ):
        self.notifier = notifier
        self.audit = audit
        self.jobs = jobs
        self.entitlement = entitlement

    def _check_proctoring(self, teacher: User) -> None:
        if not self.entitlement(teacher.school):
            raise ForbiddenError(PROCTORING_NOT_PERMITTED)

    @staticmethod
    def _save(exam: Exam) -> Exam:
        try:
            exam.save()
        except ValidationError as exc:
            raise PreconditionFailedError(f"Invalid exam definition: {exc}") from exc
        return exam

    @staticmethod
    def _check_window(start_time: datetime | None, end_time: datetime | None) -> None:
        if start_time and end_time and ensure_utc(end_time) <= ensure_utc(start_time):
            raise PreconditionFailedError("Exam end time must be after its start time")

    def create(self, teacher: User, definition: dict[str, Any]) -> Exam:
        """Persist a new exam as scheduled and hidden."""
        definition = dict(definition)
        exam_type = definition.pop("exam_type", None) or ExamType.BASIC.value
        proctoring = definition.pop("proctoring_settings", None) or {}
        questions = build_questions(definition.pop("questions", None) or [])

        if exam_type == ExamType.PROCTORED.value:
            self._check_proctoring(teacher)
        else:
            # Basic exams never carry proctoring requirements
            proctoring = {}

        self._check_window(definition.get("start_time"), definition.get("end_time"))

        exam = Exam(
            teacher=teacher,
            school=teacher.school,
            questions=questions,
            exam_type=exam_type,
            proctoring_settings=ProctoringSettings(**proctoring),
            status=ExamStatus.SCHEDULED.value,
            is_active=False,
            **{k: v for k, v in definition.items() if k in EDITABLE_FIELDS and v is not None},
        )
        self._save(exam)
        logger.info("Exam %s created by teacher %s (%s)", exam.id, teacher.id, exam.exam_type)

        self.audit.record(
            AuditAction.EXAM_CREATED,
            teacher,
            {"exam_id": str(exam.id), "title": exam.title, "subject": exam.subject},
            Severity.MEDIUM,
        )
        return exam

    def update(self, teacher: User, exam_id: str, changes: dict[str, Any]) -> Exam:
        exam = get_owned_exam(teacher, exam_id)
        if exam.status == ExamStatus.ENDED.value:
            raise ConflictError("An ended exam cannot be edited")

        if changes.get("questions") is not None:
            if exam.status != ExamStatus.SCHEDULED.value:
                raise ConflictError("Questions can only be changed before the exam starts")
            exam.questions = build_questions(changes["questions"])
            if changes.get("total_marks") is None:
                exam.total_marks = 0

        exam_type = changes.get("exam_type")
        if exam_type and exam_type != exam.exam_type:
            if exam_type == ExamType.PROCTORED.value:
                self._check_proctoring(teacher)
            else:
                exam.proctoring_settings = ProctoringSettings()
            exam.exam_type = exam_type

        if changes.get("proctoring_settings") and exam.exam_type == ExamType.PROCTORED.value:
            merged = exam.proctoring_settings.to_mongo().to_dict()
            merged.update(changes["proctoring_settings"])
            exam.proctoring_settings = ProctoringSettings(**merged)

        for field in EDITABLE_FIELDS:
            if changes.get(field) is not None:
                setattr(exam, field, changes[field])

        self._check_window(exam.start_time, exam.end_time)
        self._save(exam)
        self.audit.record(
            AuditAction.EXAM_UPDATED,
            teacher,
            {"exam_id": str(exam.id), "title": exam.title},
            Severity.MEDIUM,
        )
        return exam

    def delete(self, teacher: User, exam_id: str) -> None:
        exam = get_owned_exam(teacher, exam_id)
        if Session.objects(exam=exam.id).count():
            raise ConflictError("Exams with sessions are kept for reporting and cannot be deleted")
        exam.delete()
        self.audit.record(
            AuditAction.EXAM_DELETED,
            teacher,
            {"exam_id": str(exam.id), "title": exam.title},
            Severity.HIGH,
        )

    def set_status(
        self,
        teacher: User,
        exam_id: str,
        status: str | None = None,
        is_active: bool | None = None,
    ) -> tuple[Exam, int]:
        """Move the exam through its lifecycle and/or toggle visibility.

        Returns the updated exam and the number of sessions terminated by an end.
        """
        exam = get_owned_exam(teacher, exam_id)
        logger.info(
            "Status change on exam %s by teacher %s: status=%s is_active=%s",
            exam.id, teacher.id, status, is_active,
        )

        if exam.status == ExamStatus.ENDED.value:
            raise ConflictError("This exam has already ended", record=exam.to_output())

        if status is not None:
            if status not in ExamStatus.values():
                raise PreconditionFailedError(f"Unknown exam status: {status}")
            if status not in ALLOWED_TRANSITIONS[exam.status]:
                raise ConflictError(f"Cannot move an exam from {exam.status} to {status}")
            if status == ExamStatus.ENDED.value:
                terminated = self.end(exam, actor=teacher)
                return Exam.objects(id=exam.id).first(), terminated

        updates: dict[str, Any] = {}
        if status is not None:
            updates["set__status"] = status
        if is_active is not None:
            updates["set__is_active"] = bool(is_active)
        if not updates:
            return exam, 0

        updated: Exam | None = Exam.objects(id=exam.id, status__ne=ExamStatus.ENDED.value).modify(
            new=True, set__updated_at=utc_now(), **updates
        )
        if updated is None:
            raise ConflictError("This exam has already ended")

        started = status == ExamStatus.ACTIVE.value and exam.status != ExamStatus.ACTIVE.value
        self.audit.record(
            AuditAction.EXAM_STARTED if started else AuditAction.EXAM_UPDATED,
            teacher,
            {"exam_id": str(updated.id), "title": updated.title, "status": updated.status, "is_active": updated.is_active},
            Severity.MEDIUM,
        )
        if started:
            self._schedule_auto_end(updated)
        return updated, 0

    def _schedule_auto_end(self, exam: Exam) -> None:
        if self.jobs is None or exam.end_time is None:
            return
        try:
            self.jobs.end_exam_at(ensure_utc(exam.end_time), str(exam.id))
        except Exception:
            logger.exception("Could not schedule automatic end of exam %s", exam.id)

    def end(self, exam: Exam, actor: User | None = None, message: str = ENDED_BY_TEACHER) -> int:
        """End `exam` and terminate all of its ongoing sessions.

        The exam flip is a conditional update, so of two concurrent ends only one
        runs the cascade. Sessions are terminated with one conditional bulk
        update; scoring their saved answers afterwards is best-effort per session.
        """
        now = utc_now()
        ended: Exam | None = Exam.objects(id=exam.id, status__ne=ExamStatus.ENDED.value).modify(
            new=True,
            set__status=ExamStatus.ENDED.value,
            set__is_active=False,
            set__updated_at=now,
        )
        if ended is None:
            raise ConflictError("This exam has already ended")

        ongoing_ids = list(Session.objects(exam=exam.id, status=SessionStatus.ONGOING.value).scalar("id"))
        terminated = Session.objects(exam=exam.id, status=SessionStatus.ONGOING.value).update(
            set__status=SessionStatus.TERMINATED.value,
            set__end_time=now,
            set__updated_at=now,
            inc__revision=1,
        )
        logger.info("Exam %s ended; terminated %s ongoing sessions", exam.id, terminated)

        self._score_terminated(ended, ongoing_ids)

        self.notifier.publish(
            exam_room(ended.id),
            EXAM_TERMINATED,
            {"exam_id": str(ended.id), "message": message},
        )
        self.audit.record(
            AuditAction.EXAM_ENDED,
            actor or ended.teacher,
            {"exam_id": str(ended.id), "title": ended.title, "terminated_sessions": terminated},
            Severity.MEDIUM,
        )
        return terminated

    @staticmethod
    def _score_terminated(exam: Exam, session_ids: list) -> None:
        if not session_ids:
            return
        for session in Session.objects(id__in=session_ids, status=SessionStatus.TERMINATED.value):
            try:
                ExamLifecycle._score_one(exam, session)
            except Exception:
                logger.exception("Failed to score terminated session %s", session.id)

    @staticmethod
    def _score_one(exam: Exam, session: Session) -> None:
        """Write the auto score of a terminated session, keeping any manual grades.

        A teacher may grade between the bulk terminate and this write, so the
        write is conditional on the revision read and re-applies stored grades.
        """
        result = score_submission(exam, session.answers)
        for _ in range(SCORE_RETRIES):
            grades = [(int(key), float(marks)) for key, marks in (session.manual_grades or {}).items()]
            score, percentage, _ = apply_manual_grades(result.total_score, {}, grades, exam.total_marks)
            updated = Session.objects(
                id=session.id, status=SessionStatus.TERMINATED.value, revision=session.revision
            ).modify(
                new=True,
                inc__revision=1,
                set__score=score,
                set__percentage=percentage,
                set__correct_count=result.correct_count,
                set__wrong_count=result.wrong_count,
            )
            if updated is not None:
                return
            session = Session.objects(id=session.id, status=SessionStatus.TERMINATED.value).first()
            if session is None:
                return
        logger.warning("Gave up scoring terminated session %s after concurrent updates", session.id)

    def auto_end(self, exam_id: str) -> int:
        """Scheduled end at `exam.end_time`; a no-op if the window moved or the exam is over."""
        exam: Exam | None = Exam.objects(id=exam_id).first()
        if not exam or exam.status != ExamStatus.ACTIVE.value:
            return 0
        end_time = ensure_utc(exam.end_time)
        if end_time is None or end_time > utc_now():
            return 0
        try:
            return self.end(exam, message=ENDED_ON_SCHEDULE)
        except ConflictError:
            return 0
