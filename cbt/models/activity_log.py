from mongoengine import ReferenceField, StringField

from cbt.models.base import BaseDocument
from cbt.models.school import School
from cbt.models.user import User
from cbt.utils.base import AuditAction, Severity


class ActivityLog(BaseDocument):
    """Audit trail entry for a significant action inside a school.

    The action context (exam id, score, violation type, ...) lives in `metadata`.
    """
    school = ReferenceField(document_type=School, required=True, null=False)
    user = ReferenceField(document_type=User, required=True, null=False)
    user_name = StringField(required=False, null=True)
    user_role = StringField(required=False, null=True)
    action = StringField(required=True, null=False, choices=AuditAction.choices())
    severity = StringField(required=True, null=False, choices=Severity.choices(), default=Severity.LOW.value)

    meta = {
        "collection": "activity_logs",
        "indexes": [
            {"fields": ["school", "-created_at"]},
            {"fields": ["school", "user"]},
            {"fields": ["school", "action"]},
        ],
    }
