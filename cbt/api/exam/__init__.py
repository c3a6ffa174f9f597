from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field, model_validator

from cbt.api.deps import get_lifecycle, get_session_service, require_student, require_teacher
from cbt.models.exam import ExamStatus, ExamType, QuestionType
from cbt.models.user import User
from cbt.services import reporting
from cbt.services.auth import get_current_user
from cbt.services.exam_lifecycle import ExamLifecycle
from cbt.services.exam_session import ExamSessionService
from cbt.services.proctoring import ProctoringMonitor


router = APIRouter()


class QuestionBody(BaseModel):
    """Question as clients and importers send it.

    `correct_option` is the legacy single-answer form; it is folded into
    `correct_options` here and never stored.
    """
    text: str
    type: QuestionType = QuestionType.MCQ
    options: list[str] = []
    correct_options: list[int] = []
    correct_option: int | None = Field(default=None, exclude=True)
    correct_answer: str | None = None
    marks: float = Field(default=1, ge=0)
    image_url: str | None = None

    @model_validator(mode="after")
    def fold_legacy_fields(self) -> "QuestionBody":
        if not self.correct_options and self.correct_option is not None:
            self.correct_options = [self.correct_option]
        if self.type == QuestionType.TRUE_FALSE and not self.options:
            self.options = ["True", "False"]
        return self

    def to_definition(self) -> dict[str, Any]:
        data = self.model_dump()
        data["type"] = self.type.value
        return data


class ProctoringBody(BaseModel):
    require_camera: bool = False
    require_audio: bool = False
    detect_violations: bool = False
    lock_browser: bool = False
    screen_sharing: bool = False
    face_detection: bool = False
    tab_switch_limit: int = Field(default=0, ge=0)


class ExamBody(BaseModel):
    title: str
    subject: str
    duration_minutes: int = Field(gt=0)
    start_time: datetime | None = None
    end_time: datetime | None = None
    class_level: str | None = None
    groups: list[str] = []
    access_code: str | None = None
    questions: list[QuestionBody] = []
    total_marks: float | None = Field(default=None, ge=0)
    passing_score: float | None = Field(default=None, ge=0)
    passing_percentage: float | None = Field(default=None, ge=0, le=100)
    negative_marking: float = Field(default=0, ge=0)
    exam_type: ExamType = ExamType.BASIC
    proctoring_settings: ProctoringBody | None = None

    def to_definition(self) -> dict[str, Any]:
        data = self.model_dump(exclude={"questions", "proctoring_settings"})
        data["exam_type"] = self.exam_type.value
        data["questions"] = [q.to_definition() for q in self.questions]
        if self.proctoring_settings is not None:
            data["proctoring_settings"] = self.proctoring_settings.model_dump()
        return data


class ExamUpdateBody(BaseModel):
    title: str | None = None
    subject: str | None = None
    duration_minutes: int | None = Field(default=None, gt=0)
    start_time: datetime | None = None
    end_time: datetime | None = None
    class_level: str | None = None
    groups: list[str] | None = None
    access_code: str | None = None
    questions: list[QuestionBody] | None = None
    total_marks: float | None = Field(default=None, ge=0)
    passing_score: float | None = Field(default=None, ge=0)
    passing_percentage: float | None = Field(default=None, ge=0, le=100)
    negative_marking: float | None = Field(default=None, ge=0)
    exam_type: ExamType | None = None
    proctoring_settings: dict[str, Any] | None = None

    def to_changes(self) -> dict[str, Any]:
        changes = self.model_dump(exclude_unset=True, exclude={"questions", "exam_type"})
        if self.questions is not None:
            changes["questions"] = [q.to_definition() for q in self.questions]
        if self.exam_type is not None:
            changes["exam_type"] = self.exam_type.value
        return changes


@router.post("")
def create_exam(
    body: ExamBody,
    lifecycle: ExamLifecycle = Depends(get_lifecycle),
    current_user: User = Depends(require_teacher),
) -> dict:
    """TEACHER: Create an exam; it starts scheduled and hidden."""
    exam = lifecycle.create(current_user, body.to_definition())
    return exam.to_output()


@router.get("/teacher")
def list_teacher_exams(current_user: User = Depends(require_teacher)) -> list[dict]:
    return reporting.teacher_exams(current_user)


@router.get("/available")
def list_student_exams(current_user: User = Depends(require_student)) -> list[dict]:
    """STUDENT: Exams targeted at the student, with their own progress on each."""
    return reporting.student_exams(current_user)


@router.get("/results")
def list_teacher_results(current_user: User = Depends(require_teacher)) -> list[dict]:
    return reporting.teacher_results(current_user)


@router.get("/grading-queue")
def grading_queue(current_user: User = Depends(require_teacher)) -> list[dict]:
    """TEACHER: Finished sessions of essay exams awaiting manual marks."""
    return reporting.grading_queue(current_user)


@router.get("/{exam_id}")
def get_exam(exam_id: str, current_user: User = Depends(get_current_user)) -> dict:
    return reporting.exam_for_viewer(current_user, exam_id)


@router.put("/{exam_id}")
def update_exam(
    exam_id: str,
    body: ExamUpdateBody,
    lifecycle: ExamLifecycle = Depends(get_lifecycle),
    current_user: User = Depends(require_teacher),
) -> dict:
    exam = lifecycle.update(current_user, exam_id, body.to_changes())
    return exam.to_output()


class StatusBody(BaseModel):
    status: ExamStatus | None = None
    is_active: bool | None = None

@router.patch("/{exam_id}/status")
def set_exam_status(
    exam_id: str,
    body: StatusBody,
    lifecycle: ExamLifecycle = Depends(get_lifecycle),
    current_user: User = Depends(require_teacher),
) -> dict:
    """TEACHER: Start, end or show/hide an exam. Ending terminates every ongoing session."""
    exam, terminated = lifecycle.set_status(
        current_user,
        exam_id,
        status=body.status.value if body.status else None,
        is_active=body.is_active,
    )
    return {"exam": exam.to_output(), "terminated_sessions": terminated}


@router.delete("/{exam_id}")
def delete_exam(
    exam_id: str,
    lifecycle: ExamLifecycle = Depends(get_lifecycle),
    current_user: User = Depends(require_teacher),
) -> dict:
    lifecycle.delete(current_user, exam_id)
    return {"status": True}


@router.get("/{exam_id}/sessions")
def exam_sessions(exam_id: str, current_user: User = Depends(require_teacher)) -> list[dict]:
    """TEACHER: Live invigilation board for one exam."""
    return reporting.exam_sessions(current_user, exam_id)


@router.get("/{exam_id}/violations")
def exam_violations(exam_id: str, current_user: User = Depends(require_teacher)) -> dict:
    return ProctoringMonitor.exam_violations(current_user, exam_id)


@router.get("/{exam_id}/my-violations")
def my_violations(exam_id: str, current_user: User = Depends(require_student)) -> dict:
    return ProctoringMonitor.my_violations(current_user, exam_id)


@router.get("/{exam_id}/export")
def export_results(exam_id: str, current_user: User = Depends(require_teacher)) -> Response:
    filename, content = reporting.export_results_csv(current_user, exam_id)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/{exam_id}/start")
def start_exam(
    exam_id: str,
    service: ExamSessionService = Depends(get_session_service),
    current_user: User = Depends(require_student),
) -> dict:
    """STUDENT: Open a session, or resume the ongoing one. Safe to retry."""
    session, created = service.start(current_user, exam_id)
    exam = reporting.exam_for_viewer(current_user, exam_id)
    return {
        "session": session.to_output(),
        "exam": exam,
        "resumed": not created,
        "is_locked": session.is_locked,
        "lock_reason": session.lock_reason,
    }
