"""
Tests for teacher lock / unlock / force-submit.
Run with: pytest tests/test_session_control.py -v
"""
import pytest

from cbt.models.session import SessionStatus
from cbt.services.session_control import SessionControl
from cbt.utils.base import AuditAction, ConflictError, ForbiddenError, UserRole


@pytest.fixture
def control(notifier, audit):
    return SessionControl(notifier, audit)


@pytest.fixture
def session(exam, student, make_session):
    return make_session(exam, student, answers={"0": 1, "1": 0})


class TestLock:
    def test_lock_with_default_reason(self, control, session, teacher, notifier, audit):
        updated = control.lock(teacher, str(session.id))

        assert updated.is_locked is True
        assert updated.lock_reason == "Locked by teacher"
        room, payload = notifier.named("session_locked")[0]
        assert room == f"session_{session.id}"
        assert payload["reason"] == "Locked by teacher"
        assert audit.actions == [AuditAction.SESSION_LOCKED]

    def test_unlock_clears_the_reason(self, control, session, teacher, notifier):
        control.lock(teacher, str(session.id), "Suspicious movement")
        updated = control.unlock(teacher, str(session.id))

        assert updated.is_locked is False
        assert updated.lock_reason is None
        assert len(notifier.named("session_unlocked")) == 1

    def test_other_teacher_is_forbidden(self, control, session, make_user):
        with pytest.raises(ForbiddenError):
            control.lock(make_user(role=UserRole.TEACHER), str(session.id))

    def test_finished_session_cannot_be_locked(self, control, exam, student, teacher, make_session):
        session = make_session(exam, student, status="completed")
        with pytest.raises(ConflictError):
            control.lock(teacher, str(session.id))


class TestForceSubmit:
    def test_scores_saved_answers_and_terminates(self, control, session, teacher, notifier, audit):
        updated, result = control.force_submit(teacher, str(session.id))

        assert result.total_score == 5
        assert updated.status == SessionStatus.TERMINATED.value
        assert updated.is_locked is True
        assert updated.lock_reason == "Force submitted by teacher"
        assert updated.end_time is not None
        assert updated.score == 5
        assert notifier.named("session_force_submitted")[0][0] == f"session_{session.id}"
        assert audit.actions == [AuditAction.EXAM_TERMINATED]

    def test_custom_reason(self, control, session, teacher):
        updated, _ = control.force_submit(teacher, str(session.id), "Caught with notes")
        assert updated.lock_reason == "Caught with notes"

    def test_completed_session_is_rejected_with_record(self, control, exam, student, teacher, make_session):
        session = make_session(exam, student, status="completed", score=10)

        with pytest.raises(ConflictError) as exc_info:
            control.force_submit(teacher, str(session.id))
        assert exc_info.value.record["score"] == 10

    def test_locked_session_can_be_force_submitted(self, control, session, teacher):
        control.lock(teacher, str(session.id))
        updated, _ = control.force_submit(teacher, str(session.id))
        assert updated.status == SessionStatus.TERMINATED.value

    def test_other_teacher_is_forbidden(self, control, session, make_user):
        with pytest.raises(ForbiddenError):
            control.force_submit(make_user(role=UserRole.TEACHER), str(session.id))
