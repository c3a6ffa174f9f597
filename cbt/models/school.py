from mongoengine import BooleanField, DateTimeField, StringField

from cbt.models.base import BaseDocument


class School(BaseDocument):
    """School tenant.

    Fields:
    - name (str)
    - login_id (str, unique): public school identifier, e.g. SCH-20670E
    - proctored_exams (bool): subscription feature flag for proctored exams
    - subscription_expires_at (datetime|None): end of the paid period, None for open-ended
    """
    name = StringField(required=True, null=False)
    login_id = StringField(required=True, null=False, unique=True)
    proctored_exams = BooleanField(required=True, null=False, default=False)
    subscription_expires_at = DateTimeField(required=False, null=True)

    meta = {
        "collection": "schools",
        "indexes": [
            {"fields": ["login_id"], "unique": True},
        ],
    }
