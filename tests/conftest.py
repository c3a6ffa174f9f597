"""
Shared fixtures: an in-memory MongoDB (mongomock) plus recording doubles
for the notification channel, the audit sink and the job scheduler.
Run with: pytest tests -v
"""
import itertools
from datetime import timedelta

import mongomock
import pytest
from mongoengine import connect, disconnect

from cbt.models.activity_log import ActivityLog
from cbt.models.exam import Exam, ExamStatus, Question
from cbt.models.school import School
from cbt.models.session import Session
from cbt.models.student_record import StudentRecord
from cbt.models.user import User
from cbt.utils.base import Severity, UserRole, utc_now


MODELS = (School, User, Exam, Session, ActivityLog, StudentRecord)

_counter = itertools.count(1)


@pytest.fixture(scope="session", autouse=True)
def mongo():
    connect(
        "cbt-test",
        host="mongodb://localhost",
        alias="default",
        mongo_client_class=mongomock.MongoClient,
        tz_aware=True,
    )
    yield
    disconnect(alias="default")


@pytest.fixture(autouse=True)
def clean_db():
    yield
    for model in MODELS:
        model.drop_collection()


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def publish(self, room, event, payload):
        self.events.append((room, event, payload))

    def named(self, event):
        return [(room, payload) for room, name, payload in self.events if name == event]


class RecordingAudit:
    def __init__(self):
        self.entries = []

    def record(self, action, actor, metadata=None, severity=Severity.LOW):
        self.entries.append((action, actor.id, dict(metadata or {}), severity))

    @property
    def actions(self):
        return [action for action, *_ in self.entries]


class RecordingJobs:
    def __init__(self):
        self.exam_ends = []
        self.session_expiries = []

    def end_exam_at(self, run_at, exam_id):
        self.exam_ends.append((run_at, exam_id))

    def expire_session_at(self, run_at, session_id):
        self.session_expiries.append((run_at, session_id))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def audit():
    return RecordingAudit()


@pytest.fixture
def jobs():
    return RecordingJobs()


@pytest.fixture
def make_school():
    def _make(login_id=None, proctored_exams=False, subscription_expires_at=None):
        school = School(
            name="Greenfield College",
            login_id=login_id or f"SCH-{next(_counter):06d}",
            proctored_exams=proctored_exams,
            subscription_expires_at=subscription_expires_at,
        )
        return school.save()
    return _make


@pytest.fixture
def school(make_school):
    return make_school()


@pytest.fixture
def make_user(school):
    def _make(role=UserRole.STUDENT, user_school=None, class_level="SS 2", group=None, name=None):
        n = next(_counter)
        user = User(
            name=name or f"{role.value.title()} {n}",
            email=f"{role.value}{n}@example.com",
            password="not-a-real-hash",
            role=role.value,
            school=user_school or school,
            class_level=class_level if role == UserRole.STUDENT else None,
            group=group,
            registration_number=f"REG/{n:04d}" if role == UserRole.STUDENT else None,
        )
        return user.save()
    return _make


@pytest.fixture
def teacher(make_user):
    return make_user(role=UserRole.TEACHER)


@pytest.fixture
def student(make_user):
    return make_user()


def mcq(correct=0, marks=1, options=("A", "B", "C", "D")):
    correct = correct if isinstance(correct, list) else [correct]
    return Question(text="Pick one", type="mcq", options=list(options), correct_options=correct, marks=marks)


@pytest.fixture
def make_exam(teacher):
    def _make(
        owner=None,
        questions=None,
        status=ExamStatus.ACTIVE,
        is_active=True,
        negative_marking=0,
        class_level="SS2",
        duration_minutes=30,
        end_time=None,
        **extra,
    ):
        owner = owner or teacher
        exam = Exam(
            title="Mathematics Mid-Term",
            subject="Mathematics",
            duration_minutes=duration_minutes,
            class_level=class_level,
            questions=questions if questions is not None else [mcq(1, marks=5), mcq(2, marks=5)],
            negative_marking=negative_marking,
            status=status.value,
            is_active=is_active,
            end_time=end_time,
            teacher=owner,
            school=owner.school,
            **extra,
        )
        return exam.save()
    return _make


@pytest.fixture
def exam(make_exam):
    return make_exam()


@pytest.fixture
def make_session():
    def _make(exam, student, **fields):
        now = utc_now()
        session = Session(
            user=student,
            exam=exam,
            start_time=fields.pop("start_time", now),
            expires_at=fields.pop("expires_at", now + timedelta(minutes=exam.duration_minutes)),
            **fields,
        )
        return session.save()
    return _make
