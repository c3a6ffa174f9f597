import re

from mongoengine import (
    BooleanField,
    DateTimeField,
    EmbeddedDocumentField,
    FloatField,
    IntField,
    ListField,
    ReferenceField,
    StringField,
    ValidationError,
)

from cbt.models.base import BaseDocument, BaseEmbeddedDocument, reference_id
from cbt.models.school import School
from cbt.models.user import User
from cbt.utils.base import BaseEnum


class ExamStatus(BaseEnum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    ENDED = "ended"


class ExamType(BaseEnum):
    BASIC = "basic"
    PROCTORED = "proctored"


class QuestionType(BaseEnum):
    MCQ = "mcq"
    TRUE_FALSE = "true_false"
    FIB = "fib"
    ESSAY = "essay"


OPTION_TYPES = (QuestionType.MCQ.value, QuestionType.TRUE_FALSE.value)


def normalize_class_level(value: str | None) -> str:
    return re.sub(r"\s+", "", value or "").lower()


class Question(BaseEmbeddedDocument):
    """Embedded: one question of an exam, addressed by its position in `Exam.questions`.

    Fields:
    - text (str), image_url (str|None)
    - type (mcq/true_false/fib/essay)
    - options (list[str]): choices for mcq/true_false
    - correct_options (list[int]): indexes into options, several for multi-select
    - correct_answer (str|None): expected text for fib
    - marks (float): weight, 1 when unset
    """
    text = StringField(required=True, null=False)
    type = StringField(required=True, null=False, choices=QuestionType.choices(), default=QuestionType.MCQ.value)
    options = ListField(StringField(), null=False, default=list)
    correct_options = ListField(IntField(min_value=0), null=False, default=list)
    correct_answer = StringField(required=False, null=True)
    marks = FloatField(required=True, null=False, default=1, min_value=0)
    image_url = StringField(required=False, null=True)

    def validate(self, clean=True):
        super().validate(clean)
        if self.type in OPTION_TYPES:
            if not self.options:
                raise ValidationError("Options are required")
            if not self.correct_options:
                raise ValidationError("At least one correct option is required")
            if any(index >= len(self.options) for index in self.correct_options):
                raise ValidationError("Correct option index out of range")
        elif self.type == QuestionType.FIB.value and not (self.correct_answer or "").strip():
            raise ValidationError("Fill-in-the-blank questions need a correct answer")

    def to_student_output(self) -> dict:
        output = self.to_output()
        output.pop("correct_options")
        output.pop("correct_answer")
        return output


class ProctoringSettings(BaseEmbeddedDocument):
    require_camera = BooleanField(null=False, default=False)
    require_audio = BooleanField(null=False, default=False)
    detect_violations = BooleanField(null=False, default=False)
    lock_browser = BooleanField(null=False, default=False)
    screen_sharing = BooleanField(null=False, default=False)
    face_detection = BooleanField(null=False, default=False)
    # 0 means unlimited
    tab_switch_limit = IntField(null=False, default=0, min_value=0)


class Exam(BaseDocument):
    """Exam definition.

    Owned by one teacher inside one school. Students may only open sessions while
    `status == active` and `is_active` is set; `ended` is terminal.

    Fields:
    - title/subject (str), duration_minutes (int)
    - start_time/end_time (datetime|None): optional window, end_time ends the exam automatically
    - class_level (str|None), groups (list[str]): targeting inside the school
    - questions (list[Question]): order is the key used by session answers
    - total_marks (float): defaults to the sum of question marks
    - passing_score/passing_percentage, negative_marking (marks lost per wrong answer)
    - exam_type (basic/proctored), proctoring_settings
    - status (scheduled/active/ended), is_active (visibility)
    """
    title = StringField(required=True, null=False)
    subject = StringField(required=True, null=False)
    duration_minutes = IntField(required=True, null=False, min_value=1)
    start_time = DateTimeField(required=False, null=True)
    end_time = DateTimeField(required=False, null=True)

    class_level = StringField(required=False, null=True)
    groups = ListField(StringField(), null=False, default=list)
    access_code = StringField(required=False, null=True)

    questions = ListField(EmbeddedDocumentField(Question), null=False, default=list)
    total_marks = FloatField(required=True, null=False, default=0, min_value=0)
    passing_score = FloatField(required=True, null=False, default=0, min_value=0)
    passing_percentage = FloatField(required=True, null=False, default=50, min_value=0, max_value=100)
    negative_marking = FloatField(required=True, null=False, default=0, min_value=0)

    exam_type = StringField(required=True, null=False, choices=ExamType.choices(), default=ExamType.BASIC.value)
    proctoring_settings = EmbeddedDocumentField(ProctoringSettings, null=False, default=ProctoringSettings)

    status = StringField(required=True, null=False, choices=ExamStatus.choices(), default=ExamStatus.SCHEDULED.value)
    is_active = BooleanField(required=True, null=False, default=False)

    teacher = ReferenceField(document_type=User, required=True, null=False)
    school = ReferenceField(document_type=School, required=True, null=False)

    meta = {
        "collection": "exams",
        "indexes": [
            {"fields": ["teacher", "-created_at"]},
            {"fields": ["school", "status"]},
        ],
    }

    def clean(self):
        if not self.total_marks:
            self.total_marks = sum(q.marks or 1 for q in self.questions)

    @property
    def accepts_sessions(self) -> bool:
        return self.status == ExamStatus.ACTIVE.value and bool(self.is_active)

    @property
    def has_essay_questions(self) -> bool:
        return any(q.type == QuestionType.ESSAY.value for q in self.questions)

    def targets(self, student: User) -> bool:
        """Class level (spacing and case ignored) and group targeting; blank means everyone."""
        class_level = normalize_class_level(self.class_level)
        if class_level and student.class_level and class_level != normalize_class_level(student.class_level):
            return False
        if self.groups and student.group not in self.groups:
            return False
        return True

    def is_owned_by(self, user: User) -> bool:
        return reference_id(self, "teacher") == user.id

    def to_student_output(self) -> dict:
        output = self.to_output(exclude=["questions"])
        output["questions"] = [q.to_student_output() for q in self.questions]
        output["question_count"] = len(self.questions)
        return output
