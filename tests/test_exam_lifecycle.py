"""
Tests for exam authoring and the scheduled -> active -> ended state machine.
Run with: pytest tests/test_exam_lifecycle.py -v
"""
from datetime import timedelta

import pytest

from cbt.models.exam import Exam, ExamStatus
from cbt.models.session import Session, SessionStatus
from cbt.services import exam_lifecycle
from cbt.services.entitlement import has_proctoring
from cbt.services.exam_lifecycle import ExamLifecycle
from cbt.services.exam_session import ExamSessionService
from cbt.utils.base import (
    AuditAction,
    ConflictError,
    ForbiddenError,
    PreconditionFailedError,
    UserRole,
    utc_now,
)


@pytest.fixture
def lifecycle(notifier, audit, jobs):
    return ExamLifecycle(notifier, audit, jobs)


def definition(**overrides):
    data = {
        "title": "Biology Test",
        "subject": "Biology",
        "duration_minutes": 40,
        "class_level": "SS 2",
        "questions": [
            {"text": "Cell powerhouse?", "type": "mcq", "options": ["Nucleus", "Mitochondria"], "correct_options": [1], "marks": 2},
            {"text": "Explain diffusion", "type": "essay", "marks": 8},
        ],
    }
    data.update(overrides)
    return data


class TestCreate:
    def test_new_exam_is_scheduled_and_hidden(self, lifecycle, teacher, audit):
        exam = lifecycle.create(teacher, definition())

        assert exam.status == ExamStatus.SCHEDULED.value
        assert exam.is_active is False
        assert exam.total_marks == 10
        assert exam.is_owned_by(teacher)
        assert audit.actions == [AuditAction.EXAM_CREATED]

    def test_explicit_total_marks_is_kept(self, lifecycle, teacher):
        assert lifecycle.create(teacher, definition(total_marks=50)).total_marks == 50

    def test_proctored_exam_needs_entitlement(self, lifecycle, teacher):
        with pytest.raises(ForbiddenError, match="subscription"):
            lifecycle.create(teacher, definition(exam_type="proctored"))

    def test_bypass_school_skips_entitlement(self, lifecycle, make_school, make_user):
        school = make_school(login_id="SCH-20670E")
        teacher = make_user(role=UserRole.TEACHER, user_school=school)

        exam = lifecycle.create(teacher, definition(exam_type="proctored", proctoring_settings={"require_camera": True}))

        assert exam.exam_type == "proctored"
        assert exam.proctoring_settings.require_camera is True

    def test_basic_exam_drops_proctoring_settings(self, lifecycle, teacher):
        exam = lifecycle.create(teacher, definition(proctoring_settings={"require_camera": True}))
        assert exam.proctoring_settings.require_camera is False

    def test_invalid_question_is_rejected(self, lifecycle, teacher):
        bad = definition(questions=[{"text": "No options", "type": "mcq", "correct_options": [0]}])
        with pytest.raises(PreconditionFailedError):
            lifecycle.create(teacher, bad)

    def test_end_before_start_is_rejected(self, lifecycle, teacher):
        now = utc_now()
        with pytest.raises(PreconditionFailedError):
            lifecycle.create(teacher, definition(start_time=now, end_time=now - timedelta(hours=1)))


class TestEntitlement:
    def test_paid_plan(self, make_school):
        assert has_proctoring(make_school(proctored_exams=True)) is True

    def test_expired_plan(self, make_school):
        school = make_school(proctored_exams=True, subscription_expires_at=utc_now() - timedelta(days=1))
        assert has_proctoring(school) is False

    def test_no_school(self):
        assert has_proctoring(None) is False


class TestSetStatus:
    def test_activate_admits_students(self, lifecycle, make_exam, teacher, audit):
        exam = make_exam(status=ExamStatus.SCHEDULED, is_active=False)

        updated, terminated = lifecycle.set_status(teacher, str(exam.id), "active", True)

        assert updated.accepts_sessions
        assert terminated == 0
        assert audit.actions == [AuditAction.EXAM_STARTED]

    def test_activation_schedules_auto_end(self, lifecycle, make_exam, teacher, jobs):
        end_time = utc_now() + timedelta(hours=2)
        exam = make_exam(status=ExamStatus.SCHEDULED, end_time=end_time)

        lifecycle.set_status(teacher, str(exam.id), "active")

        assert [exam_id for _, exam_id in jobs.exam_ends] == [str(exam.id)]

    def test_visibility_toggle_on_active_exam(self, lifecycle, exam, teacher):
        updated, _ = lifecycle.set_status(teacher, str(exam.id), is_active=False)
        assert updated.status == ExamStatus.ACTIVE.value
        assert updated.is_active is False

    def test_only_owner(self, lifecycle, exam, make_user):
        with pytest.raises(ForbiddenError):
            lifecycle.set_status(make_user(role=UserRole.TEACHER), str(exam.id), "ended")

    def test_no_way_back_from_active_to_scheduled(self, lifecycle, exam, teacher):
        with pytest.raises(ConflictError):
            lifecycle.set_status(teacher, str(exam.id), "scheduled")

    def test_ended_is_terminal(self, lifecycle, exam, teacher):
        lifecycle.set_status(teacher, str(exam.id), "ended")
        with pytest.raises(ConflictError):
            lifecycle.set_status(teacher, str(exam.id), "active", True)

    def test_unknown_status(self, lifecycle, exam, teacher):
        with pytest.raises(PreconditionFailedError):
            lifecycle.set_status(teacher, str(exam.id), "paused")


class TestEndCascade:
    def test_all_ongoing_sessions_are_terminated(self, lifecycle, exam, teacher, make_user, make_session, notifier):
        ongoing = [make_session(exam, make_user(), answers={"0": 1}) for _ in range(3)]
        done = make_session(exam, make_user(), status="completed", score=10)

        updated, terminated = lifecycle.set_status(teacher, str(exam.id), "ended")

        assert terminated == 3
        assert updated.status == ExamStatus.ENDED.value
        assert updated.is_active is False
        for session in ongoing:
            session.reload()
            assert session.status == SessionStatus.TERMINATED.value
            assert session.end_time is not None
            assert session.score == 5
        done.reload()
        assert done.status == SessionStatus.COMPLETED.value
        assert done.score == 10
        assert notifier.named("exam_terminated") == [
            (f"exam_{exam.id}", {"exam_id": str(exam.id), "message": "This exam has been ended by the teacher"})
        ]

    def test_scoring_failure_does_not_abort_the_cascade(self, lifecycle, exam, teacher, make_user, make_session, monkeypatch):
        sessions = [make_session(exam, make_user()) for _ in range(2)]
        calls = []

        def flaky_score(exam, answers):
            calls.append(answers)
            raise RuntimeError("boom")

        monkeypatch.setattr("cbt.services.exam_lifecycle.score_submission", flaky_score)
        _, terminated = lifecycle.set_status(teacher, str(exam.id), "ended")

        assert terminated == 2
        assert len(calls) == 2
        for session in sessions:
            session.reload()
            assert session.status == SessionStatus.TERMINATED.value

    def test_grade_landing_mid_cascade_survives_scoring(
        self, lifecycle, exam, teacher, student, make_session, notifier, audit, monkeypatch
    ):
        """A teacher grading between terminate and scoring keeps their marks."""
        session = make_session(exam, student, answers={"0": 1})
        grading = ExamSessionService(notifier, audit)
        real_score = exam_lifecycle.score_submission

        def grade_then_score(exam, answers):
            grading.update_manual_grades(teacher, str(session.id), [(1, 3)])
            return real_score(exam, answers)

        monkeypatch.setattr("cbt.services.exam_lifecycle.score_submission", grade_then_score)
        lifecycle.set_status(teacher, str(exam.id), "ended")

        session.reload()
        assert session.manual_grades == {"1": 3}
        assert session.score == 8
        assert session.percentage == pytest.approx(80)
        assert session.correct_count == 1

        regraded = grading.update_manual_grades(teacher, str(session.id), [(1, 3)])
        assert regraded.score == 8

    def test_auto_end_after_end_time(self, lifecycle, make_exam, student, make_session):
        exam = make_exam(end_time=utc_now() - timedelta(seconds=1))
        session = make_session(exam, student)

        assert lifecycle.auto_end(str(exam.id)) == 1
        assert Session.objects(id=session.id).first().status == SessionStatus.TERMINATED.value

    def test_auto_end_when_window_moved(self, lifecycle, make_exam):
        exam = make_exam(end_time=utc_now() + timedelta(hours=1))
        assert lifecycle.auto_end(str(exam.id)) == 0
        assert Exam.objects(id=exam.id).first().status == ExamStatus.ACTIVE.value


class TestUpdateAndDelete:
    def test_questions_change_only_while_scheduled(self, lifecycle, exam, teacher):
        with pytest.raises(ConflictError):
            lifecycle.update(teacher, str(exam.id), {"questions": definition()["questions"]})

    def test_update_recomputes_total_marks(self, lifecycle, make_exam, teacher):
        exam = make_exam(status=ExamStatus.SCHEDULED)
        updated = lifecycle.update(teacher, str(exam.id), {"questions": definition()["questions"], "title": "Renamed"})
        assert updated.total_marks == 10
        assert updated.title == "Renamed"

    def test_delete_refused_with_sessions(self, lifecycle, exam, teacher, student, make_session):
        make_session(exam, student)
        with pytest.raises(ConflictError):
            lifecycle.delete(teacher, str(exam.id))

    def test_delete(self, lifecycle, make_exam, teacher, audit):
        exam = make_exam(status=ExamStatus.SCHEDULED)
        lifecycle.delete(teacher, str(exam.id))
        assert Exam.objects(id=exam.id).count() == 0
        assert audit.actions == [AuditAction.EXAM_DELETED]
