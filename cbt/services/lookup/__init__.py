"""Id resolution and ownership checks shared by the exam and session services."""
from __future__ import annotations

from bson import ObjectId

from cbt.models.exam import Exam
from cbt.models.session import Session
from cbt.models.user import User
from cbt.utils.base import ForbiddenError, NotFoundError


def object_id(value: str | ObjectId | None) -> ObjectId | None:
    if isinstance(value, ObjectId):
        return value
    if value and ObjectId.is_valid(str(value)):
        return ObjectId(str(value))
    return None


def get_exam(exam_id: str | ObjectId) -> Exam:
    oid = object_id(exam_id)
    exam: Exam | None = Exam.objects(id=oid).first() if oid else None
    if not exam:
        raise NotFoundError("Exam not found")
    return exam


def get_session(session_id: str | ObjectId) -> Session:
    oid = object_id(session_id)
    session: Session | None = Session.objects(id=oid).first() if oid else None
    if not session:
        raise NotFoundError("Session not found")
    return session


def get_owned_exam(teacher: User, exam_id: str | ObjectId) -> Exam:
    exam = get_exam(exam_id)
    if not exam.is_owned_by(teacher):
        raise ForbiddenError("Unauthorized to manage this exam")
    return exam


def get_owned_session(teacher: User, session_id: str | ObjectId) -> tuple[Session, Exam]:
    """Session plus its exam, only for the teacher who owns that exam."""
    session = get_session(session_id)
    exam = get_exam(session.exam_id)
    if not exam.is_owned_by(teacher):
        raise ForbiddenError("Unauthorized to manage this session")
    return session, exam


def get_student_session(student: User, session_id: str | ObjectId) -> Session:
    session = get_session(session_id)
    if session.user_id != student.id:
        # Do not reveal other students' sessions
        raise NotFoundError("Session not found")
    return session
