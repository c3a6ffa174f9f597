from __future__ import annotations

import logging
import re

from cbt.models.base import reference_id
from cbt.models.student_record import StudentRecord
from cbt.models.user import User
from cbt.utils.base import utc_now


logger = logging.getLogger(__name__)


def subject_key(subject: str) -> str:
    """Normalise a subject name, e.g. "Further Maths" -> "furthermaths"."""
    return re.sub(r"[^a-z0-9_]", "", (subject or "").lower())


def sync_subject_score(student: User, subject: str, percentage: float) -> bool:
    """Upsert the student's latest CBT percentage for `subject`.

    Best-effort; failures are logged and reported as False.
    """
    key = subject_key(subject)
    if not key:
        return False
    try:
        now = utc_now()
        StudentRecord.objects(student=student.id).update_one(
            upsert=True,
            __raw__={
                "$setOnInsert": {
                    "school": reference_id(student, "school"),
                    "full_name": student.name,
                    "class_level": student.class_level,
                    "registration_number": student.registration_number,
                    "metadata": {},
                    "created_at": now,
                },
                "$set": {f"test_scores.{key}": round(float(percentage), 2), "updated_at": now},
            },
        )
    except Exception:
        logger.exception("Failed to update %s score for student %s", subject, student.id)
        return False
    logger.info("Updated %s score for student %s: %.2f%%", subject, student.id, percentage)
    return True
