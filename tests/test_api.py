"""
HTTP-level tests: routing, pydantic bodies and the error payloads.
Run with: pytest tests/test_api.py -v
"""
import pytest
import redis
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from cbt.api.deps import get_audit, get_deferred_jobs, get_notifier
from cbt.connections.redis import get_redis
from cbt.models.exam import Exam
from cbt.services.auth import get_current_user
from main import app


class FakeRedis:
    """Just enough of redis.Redis for the rate limiter."""

    def __init__(self):
        self.keys = {}

    def set(self, name, value, ex=None, nx=False):
        if nx and name in self.keys:
            return None
        self.keys[name] = ex
        return True

    def ttl(self, name):
        return self.keys.get(name, -2)


@pytest.fixture
def as_user(teacher):
    return {"user": teacher}


@pytest.fixture
def client(as_user, notifier, audit):
    app.dependency_overrides[get_current_user] = lambda: as_user["user"]
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_audit] = lambda: audit
    app.dependency_overrides[get_deferred_jobs] = lambda: None
    fake_redis = FakeRedis()
    app.dependency_overrides[get_redis] = lambda: fake_redis
    yield TestClient(app)
    app.dependency_overrides.clear()


EXAM = {
    "title": "General Studies",
    "subject": "General Studies",
    "duration_minutes": 20,
    "class_level": "SS 2",
    "negative_marking": 1,
    "questions": [
        {"text": "2 + 2?", "options": ["3", "4"], "correct_option": 1, "marks": 2},
        {"text": "The sun is a star", "type": "true_false", "correct_options": [0], "marks": 2},
    ],
}


class TestExamRoutes:
    def test_legacy_correct_option_and_true_false_defaults(self, client):
        response = client.post("/api/exams", json=EXAM)

        assert response.status_code == 200
        questions = response.json()["questions"]
        assert questions[0]["correct_options"] == [1]
        assert "correct_option" not in questions[0]
        assert questions[1]["options"] == ["True", "False"]
        assert response.json()["status"] == "scheduled"

    def test_students_cannot_create_exams(self, client, as_user, student):
        as_user["user"] = student
        assert client.post("/api/exams", json=EXAM).status_code == 403

    def test_student_view_hides_answers(self, client, as_user, student, exam):
        as_user["user"] = student
        question = client.get(f"/api/exams/{exam.id}").json()["questions"][0]
        assert "correct_options" not in question

    def test_end_reports_terminated_sessions(self, client, exam, student, make_session):
        make_session(exam, student)
        response = client.patch(f"/api/exams/{exam.id}/status", json={"status": "ended"})

        assert response.json()["terminated_sessions"] == 1
        assert response.json()["exam"]["status"] == "ended"

    def test_service_errors_carry_status_and_record(self, client, exam):
        client.patch(f"/api/exams/{exam.id}/status", json={"status": "ended"})
        response = client.patch(f"/api/exams/{exam.id}/status", json={"is_active": True})

        assert response.status_code == 409
        assert response.json()["record"]["status"] == "ended"

    def test_malformed_id_is_not_found(self, client):
        assert client.get("/api/exams/nope").status_code == 404

    def test_export_csv(self, client, exam, student, make_session):
        make_session(exam, student, status="completed", score=5, percentage=50)
        response = client.get(f"/api/exams/{exam.id}/export")

        assert response.headers["content-type"].startswith("text/csv")
        assert "Mathematics_Mid_Term_results.csv" in response.headers["content-disposition"]
        lines = response.text.strip().splitlines()
        assert lines[0].startswith("Student Name,Email")
        assert ",completed,5.0,50.00," in lines[1]


class TestSessionRoutes:
    def test_start_submit_flow(self, client, as_user, student):
        exam_id = client.post("/api/exams", json=EXAM).json()["id"]
        client.patch(f"/api/exams/{exam_id}/status", json={"status": "active", "is_active": True})

        as_user["user"] = student
        started = client.post(f"/api/exams/{exam_id}/start").json()
        resumed = client.post(f"/api/exams/{exam_id}/start").json()
        assert resumed["resumed"] is True
        assert resumed["session"]["id"] == started["session"]["id"]

        session_id = started["session"]["id"]
        response = client.post(f"/api/sessions/{session_id}/submit", json={"answers": {"0": 1, "1": 1}})
        body = response.json()
        assert response.status_code == 200
        assert body["total_score"] == 1
        assert body["correct_count"] == 1
        assert body["wrong_count"] == 1
        assert body["session"]["status"] == "completed"

        again = client.post(f"/api/sessions/{session_id}/submit", json={"answers": {"0": 1}})
        assert again.status_code == 429

    def test_locked_autosave_is_423(self, client, as_user, exam, student, make_session):
        session = make_session(exam, student, is_locked=True, lock_reason="Locked by teacher")
        as_user["user"] = student

        response = client.put(f"/api/sessions/{session.id}/answers", json={"answers": {"0": 1}})

        assert response.status_code == 423
        assert response.json()["detail"] == "Locked by teacher"

    def test_violation_then_teacher_unlock(self, client, as_user, exam, student, teacher, make_session):
        session = make_session(exam, student)
        as_user["user"] = student
        logged = client.post(f"/api/sessions/{session.id}/violations", json={"type": "tab_switch"}).json()
        assert logged["is_locked"] is True

        as_user["user"] = teacher
        unlocked = client.post(f"/api/sessions/{session.id}/unlock").json()
        assert unlocked["is_locked"] is False

    def test_manual_grades(self, client, exam, student, make_session):
        session = make_session(exam, student, status="completed", score=5, percentage=50)
        body = {"grades": [{"question_index": 1, "marks_earned": 2}]}

        first = client.put(f"/api/sessions/{session.id}/grades", json=body).json()
        second = client.put(f"/api/sessions/{session.id}/grades", json=body).json()

        assert first["score"] == 7
        assert second["score"] == 7
        assert second["percentage"] == pytest.approx(70)

    def test_negative_marks_rejected_by_body(self, client, exam, student, make_session):
        session = make_session(exam, student, status="completed")
        body = {"grades": [{"question_index": 0, "marks_earned": -1}]}
        assert client.put(f"/api/sessions/{session.id}/grades", json=body).status_code == 422


def test_exam_document_stays_canonical(client):
    """Only correct_options reaches the store."""
    exam_id = client.post("/api/exams", json=EXAM).json()["id"]
    stored = Exam.objects(id=exam_id).first().to_mongo().to_dict()
    assert "correct_option" not in stored["questions"][0]


class DroppingPubSub:
    """Delivers one message, then loses the Redis connection."""

    def __init__(self):
        self.channels = []
        self.closed = False

    async def subscribe(self, *channels):
        self.channels.extend(channels)

    async def unsubscribe(self):
        self.channels = []

    async def aclose(self):
        self.closed = True

    async def listen(self):
        yield {"type": "subscribe", "data": 1}
        yield {"type": "message", "data": '{"event": "session_locked", "data": {}}'}
        raise redis.ConnectionError("connection lost")


class FakeAsyncRedis:
    def __init__(self):
        self.pubsub_client = DroppingPubSub()

    def pubsub(self):
        return self.pubsub_client

    async def aclose(self):
        pass


class TestRealtimeRelay:
    def test_relay_closes_the_socket_when_redis_drops(self, client, exam, student, monkeypatch):
        fake = FakeAsyncRedis()
        monkeypatch.setattr("cbt.api.realtime.user_from_token", lambda token: student)
        monkeypatch.setattr("cbt.api.realtime.get_async_redis", lambda: fake)

        with client.websocket_connect(f"/api/realtime/ws?token=t&rooms=exam_{exam.id}") as ws:
            assert ws.receive_json()["event"] == "joined"
            assert ws.receive_json() == {"event": "session_locked", "data": {}}
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_text()

        assert exc_info.value.code == 1011
        assert fake.pubsub_client.closed is True
        assert fake.pubsub_client.channels == []
