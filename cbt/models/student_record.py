from mongoengine import DictField, ReferenceField, StringField

from cbt.models.base import BaseDocument
from cbt.models.school import School
from cbt.models.user import User


class StudentRecord(BaseDocument):
    """Per-student report card aggregate.

    Fields:
    - student (Ref[User], unique), school (Ref[School])
    - full_name/class_level/registration_number (str): denormalised for exports
    - test_scores (dict): normalised subject key -> latest CBT percentage
    """
    student = ReferenceField(document_type=User, required=True, null=False)
    school = ReferenceField(document_type=School, required=True, null=False)
    full_name = StringField(required=False, null=True)
    class_level = StringField(required=False, null=True)
    registration_number = StringField(required=False, null=True)
    test_scores = DictField(null=False, default=dict)

    meta = {
        "collection": "student_records",
        "indexes": [
            {"fields": ["student"], "unique": True},
            {"fields": ["school", "class_level"]},
        ],
    }
