from mongoengine import EmailField, ReferenceField, StringField

from cbt.models.base import BaseDocument
from cbt.models.school import School
from cbt.utils.base import UserRole


class User(BaseDocument):
    """User document.

    Fields:
    - name (str): Full name
    - email (EmailStr, unique): Login identifier
    - password (str, hashed): Bcrypt-hashed password
    - token_version (str): Incremented on logout to invalidate tokens
    - role (str): student/teacher/admin
    - school (Ref[School])
    - class_level/group (str|None): exam targeting for students, e.g. "SS 2" / "science"
    - registration_number (str|None)
    """
    name = StringField(required=True, null=False)
    password = StringField(required=True, null=False)
    email = EmailField(required=True, null=False, unique=True)
    token_version = StringField(required=True, null=False, default="1")

    role = StringField(required=True, null=False, choices=UserRole.choices(), default=UserRole.STUDENT.value)
    school = ReferenceField(document_type=School, required=True, null=False)
    class_level = StringField(required=False, null=True)
    group = StringField(required=False, null=True)
    registration_number = StringField(required=False, null=True)

    meta = {
        "collection": "users",
        "indexes": [
            {"fields": ["email"], "unique": True},
            {"fields": ["school", "role"]},
        ],
    }

    @property
    def is_teacher(self) -> bool:
        return self.role == UserRole.TEACHER.value

    @property
    def is_student(self) -> bool:
        return self.role == UserRole.STUDENT.value

    def to_output(self, fields=None, exclude=None):
        exclude = list(exclude or []) + ["password", "token_version"]
        return super().to_output(fields, exclude)
