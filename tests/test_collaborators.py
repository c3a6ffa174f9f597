"""
Tests for the production audit sink, notifier and student record sync.
Run with: pytest tests/test_collaborators.py -v
"""
import json

import redis

from cbt.models.activity_log import ActivityLog
from cbt.models.student_record import StudentRecord
from cbt.services.audit import ActivityLogAuditSink
from cbt.services.notifications import RedisNotifier
from cbt.services.student_records import subject_key, sync_subject_score
from cbt.utils.base import AuditAction, Severity


class PublishRecorder:
    def __init__(self, fail=False):
        self.fail = fail
        self.published = []

    def publish(self, channel, message):
        if self.fail:
            raise redis.ConnectionError("redis is down")
        self.published.append((channel, message))
        return 1


class TestRedisNotifier:
    def test_publishes_json_on_the_room_channel(self):
        client = PublishRecorder()
        RedisNotifier(client).publish("session_abc", "session_locked", {"reason": "Tab switch"})

        channel, message = client.published[0]
        assert channel == "rooms:session_abc"
        assert json.loads(message) == {"event": "session_locked", "data": {"reason": "Tab switch"}}

    def test_publish_failure_is_swallowed(self):
        RedisNotifier(PublishRecorder(fail=True)).publish("exam_1", "exam_terminated", {})


class TestActivityLogAuditSink:
    def test_writes_an_entry(self, teacher):
        ActivityLogAuditSink().record(AuditAction.EXAM_CREATED, teacher, {"exam_id": "x"}, Severity.MEDIUM)

        entry = ActivityLog.objects.first()
        assert entry.action == "EXAM_CREATED"
        assert entry.severity == "medium"
        assert entry.user_role == "teacher"
        assert entry.metadata == {"exam_id": "x"}

    def test_failure_never_reaches_the_caller(self, teacher, monkeypatch):
        def broken_save(self, *args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(ActivityLog, "save", broken_save)
        ActivityLogAuditSink().record(AuditAction.EXAM_SUBMIT, teacher)


class TestStudentRecordSync:
    def test_subject_key(self):
        assert subject_key("Further Maths") == "furthermaths"

    def test_upserts_and_overwrites(self, student):
        assert sync_subject_score(student, "Basic Science", 40) is True
        assert sync_subject_score(student, "Basic Science", 72.5) is True
        sync_subject_score(student, "English", 65)

        record = StudentRecord.objects(student=student.id).first()
        assert record.test_scores == {"basicscience": 72.5, "english": 65.0}
        assert record.full_name == student.name
        assert StudentRecord.objects.count() == 1
