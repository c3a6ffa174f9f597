from datetime import datetime

from mongoengine import (
    BooleanField,
    DateTimeField,
    DictField,
    EmbeddedDocumentField,
    FloatField,
    IntField,
    ListField,
    ReferenceField,
    StringField,
)

from cbt.models.base import BaseDocument, BaseEmbeddedDocument, reference_id
from cbt.models.exam import Exam
from cbt.models.user import User
from cbt.utils.base import BaseEnum, ensure_utc, utc_now


class SessionStatus(BaseEnum):
    ONGOING = "ongoing"
    COMPLETED = "completed"
    TERMINATED = "terminated"


FINAL_STATUSES = (SessionStatus.COMPLETED.value, SessionStatus.TERMINATED.value)


class Violation(BaseEmbeddedDocument):
    """Embedded: one proctoring event, e.g. tab_switch, excessive_talking or LOCKED:<reason>."""
    type = StringField(required=True, null=False)
    timestamp = DateTimeField(required=True, null=False, default=utc_now)
    image_url = StringField(required=False, null=True)


class Session(BaseDocument):
    """A student's single attempt at an exam.

    Unique per (user, exam); a finished session blocks any retake.

    Fields:
    - user/exam (refs)
    - start_time/end_time (datetime), expires_at (datetime|None): server-side time box
    - answers (dict): raw answers keyed by question index as a string
    - score/percentage (float), correct_count/wrong_count (int)
    - violations (list[Violation])
    - is_locked (bool), lock_reason (str|None)
    - manual_grades (dict): question index -> marks awarded by the teacher
    - status (ongoing/completed/terminated)
    - revision (int)
    """
    user = ReferenceField(document_type=User, required=True, null=False)
    exam = ReferenceField(document_type=Exam, required=True, null=False)

    start_time = DateTimeField(required=True, null=False, default=utc_now)
    end_time = DateTimeField(required=False, null=True)
    expires_at = DateTimeField(required=False, null=True)

    answers = DictField(null=False, default=dict)
    score = FloatField(required=True, null=False, default=0)
    percentage = FloatField(required=True, null=False, default=0)
    correct_count = IntField(required=True, null=False, default=0)
    wrong_count = IntField(required=True, null=False, default=0)

    violations = ListField(EmbeddedDocumentField(Violation), null=False, default=list)
    is_locked = BooleanField(required=True, null=False, default=False)
    lock_reason = StringField(required=False, null=True)
    manual_grades = DictField(null=False, default=dict)

    status = StringField(required=True, null=False, choices=SessionStatus.choices(), default=SessionStatus.ONGOING.value)
    # Bumped by every write; read-modify-write paths use it as a guard
    revision = IntField(required=True, null=False, default=0)

    meta = {
        "collection": "sessions",
        "indexes": [
            {"fields": ["user", "exam"], "unique": True},
            {"fields": ["exam", "status"]},
        ],
    }

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_STATUSES

    @property
    def exam_id(self):
        return reference_id(self, "exam")

    @property
    def user_id(self):
        return reference_id(self, "user")

    def is_expired(self, now: datetime | None = None) -> bool:
        expires_at = ensure_utc(self.expires_at)
        return expires_at is not None and (now or utc_now()) >= expires_at

    def to_output(self, fields=None, exclude=None):
        output = super().to_output(fields, exclude)
        output["session_id"] = output.get("id")
        return output
