from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from cbt.api.deps import (
    get_monitor,
    get_session_control,
    get_session_service,
    require_student,
    require_teacher,
)
from cbt.models.user import User
from cbt.services import reporting
from cbt.services.exam_session import ExamSessionService
from cbt.services.proctoring import ProctoringMonitor
from cbt.services.rate_limit import limit_route
from cbt.services.session_control import SessionControl
from cbt.utils.config import settings


router = APIRouter()


@router.get("/results")
def my_results(current_user: User = Depends(require_student)) -> list[dict]:
    """STUDENT: Completed sessions with pass/fail."""
    return reporting.student_results(current_user)


class AnswersBody(BaseModel):
    answers: dict[str, Any]

@router.put("/{session_id}/answers")
def save_answers(
    session_id: str,
    body: AnswersBody,
    service: ExamSessionService = Depends(get_session_service),
    current_user: User = Depends(require_student),
) -> dict:
    """STUDENT: Autosave answers into an ongoing session."""
    session = service.save_answers(current_user, session_id, body.answers)
    return {"session_id": str(session.id), "answered": len(session.answers), "saved_at": session.updated_at.isoformat()}


class SubmitBody(BaseModel):
    answers: dict[str, Any] | None = None

@router.post("/{session_id}/submit", dependencies=[Depends(limit_route(settings.submit_rate_limit_seconds))])
def submit_session(
    session_id: str,
    body: SubmitBody,
    service: ExamSessionService = Depends(get_session_service),
    current_user: User = Depends(require_student),
) -> dict:
    """STUDENT | RATE-LIMITED: Score and complete the session. Without answers the autosaved ones are used."""
    session, result = service.submit(current_user, session_id, body.answers)
    output = result.to_dict()
    output["session"] = session.to_output()
    return output


class ViolationBody(BaseModel):
    type: str = Field(min_length=1)
    image_url: str | None = None

@router.post("/{session_id}/violations")
def log_violation(
    session_id: str,
    body: ViolationBody,
    monitor: ProctoringMonitor = Depends(get_monitor),
    current_user: User = Depends(require_student),
) -> dict:
    """STUDENT CLIENT: Record a proctoring event; may lock the session."""
    session = monitor.log_violation(current_user, session_id, body.type, body.image_url)
    return {
        "session_id": str(session.id),
        "violations_count": len(session.violations),
        "is_locked": session.is_locked,
        "lock_reason": session.lock_reason,
    }


@router.get("/{session_id}/violations")
def session_violations(session_id: str, current_user: User = Depends(require_teacher)) -> dict:
    return ProctoringMonitor.session_violations(current_user, session_id)


class ReasonBody(BaseModel):
    reason: str | None = None

@router.post("/{session_id}/lock")
def lock_session(
    session_id: str,
    body: ReasonBody,
    control: SessionControl = Depends(get_session_control),
    current_user: User = Depends(require_teacher),
) -> dict:
    return control.lock(current_user, session_id, body.reason).to_output()


@router.post("/{session_id}/unlock")
def unlock_session(
    session_id: str,
    control: SessionControl = Depends(get_session_control),
    current_user: User = Depends(require_teacher),
) -> dict:
    return control.unlock(current_user, session_id).to_output()


@router.post("/{session_id}/force-submit")
def force_submit_session(
    session_id: str,
    body: ReasonBody,
    control: SessionControl = Depends(get_session_control),
    current_user: User = Depends(require_teacher),
) -> dict:
    """TEACHER: Score the saved answers and terminate the session."""
    session, result = control.force_submit(current_user, session_id, body.reason)
    output = result.to_dict()
    output["session"] = session.to_output()
    return output


class GradeItem(BaseModel):
    question_index: int = Field(ge=0)
    marks_earned: float = Field(ge=0)


class GradeBody(BaseModel):
    grades: list[GradeItem] = Field(min_length=1)

@router.put("/{session_id}/grades")
def update_manual_grades(
    session_id: str,
    body: GradeBody,
    service: ExamSessionService = Depends(get_session_service),
    current_user: User = Depends(require_teacher),
) -> dict:
    """TEACHER: Override per-question marks; re-sending the same marks changes nothing."""
    session = service.update_manual_grades(
        current_user, session_id, [(g.question_index, g.marks_earned) for g in body.grades]
    )
    return {
        "session_id": str(session.id),
        "score": session.score,
        "percentage": session.percentage,
        "manual_grades": session.manual_grades,
    }
