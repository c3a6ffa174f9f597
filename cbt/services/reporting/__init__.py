"""Read models over exams and sessions for teachers, students and exports."""
from __future__ import annotations

import csv
import io
import re
from typing import Any

from cbt.models.base import reference_id
from cbt.models.exam import Exam, ExamStatus, QuestionType
from cbt.models.session import FINAL_STATUSES, Session, SessionStatus
from cbt.models.user import User
from cbt.services.lookup import get_exam, get_owned_exam
from cbt.services.proctoring import CRITICAL_TYPES
from cbt.utils.base import ForbiddenError, UserRole, ensure_utc, utc_now


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _student_brief(student: User) -> dict[str, Any]:
    return {
        "id": str(student.id),
        "name": student.name,
        "email": student.email,
        "class_level": student.class_level,
        "registration_number": student.registration_number,
    }


def teacher_exams(teacher: User) -> list[dict]:
    exams = Exam.objects(teacher=teacher.id).order_by("-created_at")
    return [exam.to_output() for exam in exams]


def student_exams(student: User) -> list[dict]:
    """Scheduled and active exams the student is targeted by, with their own progress."""
    exams = Exam.objects(
        school=reference_id(student, "school"),
        status__in=[ExamStatus.SCHEDULED.value, ExamStatus.ACTIVE.value],
    ).order_by("-created_at")
    statuses = {
        str(reference_id(s, "exam")): s.status
        for s in Session.objects(user=student.id).only("exam", "status")
    }
    now = utc_now()

    output = []
    for exam in exams:
        if not exam.targets(student):
            continue
        end_time = ensure_utc(exam.end_time)
        if end_time is not None and end_time < now:
            continue
        session_status = statuses.get(str(exam.id))
        row = exam.to_output(exclude=["questions"])
        row["question_count"] = len(exam.questions)
        row["completion_status"] = session_status
        row["is_completed"] = session_status == SessionStatus.COMPLETED.value
        row["is_terminated"] = session_status == SessionStatus.TERMINATED.value
        row["can_start"] = exam.accepts_sessions and session_status in (None, SessionStatus.ONGOING.value)
        output.append(row)
    return output


def exam_for_viewer(user: User, exam_id: str) -> dict:
    exam = get_exam(exam_id)
    if exam.is_owned_by(user):
        return exam.to_output()
    if reference_id(exam, "school") != reference_id(user, "school"):
        raise ForbiddenError("Unauthorized: this exam is not for your school")
    return exam.to_student_output()


def exam_sessions(teacher: User, exam_id: str) -> list[dict]:
    """Invigilation board: every targeted student, joined with their session if any."""
    exam = get_owned_exam(teacher, exam_id)
    students = User.objects(school=reference_id(exam, "school"), role=UserRole.STUDENT.value)
    sessions = {str(s.user_id): s for s in Session.objects(exam=exam.id).order_by("-start_time")}
    total_questions = len(exam.questions)

    rows = []
    for student in students:
        session = sessions.pop(str(student.id), None)
        if session is None and not exam.targets(student):
            continue
        rows.append(_board_row(student, session, total_questions))
    return rows


def _board_row(student: User, session: Session | None, total_questions: int) -> dict:
    if session is None:
        return {
            "session_id": None,
            "student": _student_brief(student),
            "status": "not_started",
            "is_locked": False,
            "lock_reason": None,
            "start_time": None,
            "end_time": None,
            "score": None,
            "percentage": None,
            "violations_count": 0,
            "critical_violations": 0,
            "violations": [],
            "answered": 0,
            "total_questions": total_questions,
            "has_started": False,
        }
    types = [v.type for v in session.violations]
    return {
        "session_id": str(session.id),
        "student": _student_brief(student),
        "status": session.status,
        "is_locked": session.is_locked,
        "lock_reason": session.lock_reason,
        "start_time": _iso(session.start_time),
        "end_time": _iso(session.end_time),
        "score": session.score,
        "percentage": session.percentage,
        "violations_count": len(types),
        "critical_violations": sum(1 for t in types if t in CRITICAL_TYPES),
        "violations": [v.to_output() for v in session.violations],
        "answered": len(session.answers or {}),
        "total_questions": total_questions,
        "has_started": True,
    }


def student_results(student: User) -> list[dict]:
    sessions = Session.objects(user=student.id, status=SessionStatus.COMPLETED.value).order_by("-end_time")
    results = []
    for session in sessions:
        exam: Exam | None = Exam.objects(id=session.exam_id).first()
        passing = exam.passing_percentage if exam else 50
        results.append({
            "session_id": str(session.id),
            "exam_title": exam.title if exam else "Unknown Exam",
            "subject": exam.subject if exam else "General",
            "score": session.score,
            "total_marks": exam.total_marks if exam else 0,
            "percentage": session.percentage,
            "submitted_at": _iso(session.end_time),
            "grade": "Pass" if session.percentage >= passing else "Fail",
        })
    return results


def teacher_results(teacher: User) -> list[dict]:
    exams = {e.id: e for e in Exam.objects(teacher=teacher.id)}
    if not exams:
        return []
    sessions = Session.objects(exam__in=list(exams), status=SessionStatus.COMPLETED.value).order_by("-end_time")
    students = {u.id: u for u in User.objects(id__in=list({s.user_id for s in sessions}))}

    results = []
    for session in sessions:
        exam = exams[session.exam_id]
        student = students.get(session.user_id)
        results.append({
            "session_id": str(session.id),
            "student_id": str(session.user_id),
            "student_name": student.name if student else "Student",
            "exam_id": str(exam.id),
            "exam_title": exam.title,
            "subject": exam.subject,
            "score": session.score,
            "total_marks": exam.total_marks,
            "percentage": session.percentage,
            "submitted_at": _iso(session.end_time),
        })
    return results


EXPORT_COLUMNS = ["Student Name", "Email", "Registration Number", "Status", "Score", "Percentage", "Date Submitted"]


def export_results_csv(teacher: User, exam_id: str) -> tuple[str, str]:
    """CSV of finished sessions for one exam. Returns (filename, content)."""
    exam = get_owned_exam(teacher, exam_id)
    sessions = Session.objects(exam=exam.id, status__in=list(FINAL_STATUSES)).order_by("end_time")
    students = {u.id: u for u in User.objects(id__in=[s.user_id for s in sessions])}

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(EXPORT_COLUMNS)
    for session in sessions:
        student = students.get(session.user_id)
        writer.writerow([
            student.name if student else "",
            student.email if student else "",
            (student.registration_number or "") if student else "",
            session.status,
            f"{session.score:.1f}",
            f"{session.percentage:.2f}",
            _iso(session.end_time) or "",
        ])
    slug = re.sub(r"[^A-Za-z0-9]+", "_", exam.title).strip("_") or "exam"
    filename = f"{slug}_results.csv"
    return filename, buffer.getvalue()


def grading_queue(teacher: User) -> list[dict]:
    """Finished sessions of the teacher's essay exams, with the questions to grade against."""
    exams = {
        e.id: e
        for e in Exam.objects(teacher=teacher.id, questions__type=QuestionType.ESSAY.value)
    }
    if not exams:
        return []
    sessions = Session.objects(exam__in=list(exams), status__in=list(FINAL_STATUSES)).order_by("end_time")
    queue = []
    for session in sessions:
        exam = exams[session.exam_id]
        row = session.to_output(exclude=["violations"])
        row["exam"] = {
            "id": str(exam.id),
            "title": exam.title,
            "total_marks": exam.total_marks,
            "questions": [q.to_output() for q in exam.questions],
        }
        queue.append(row)
    return queue
