from __future__ import annotations

from cbt.models.school import School
from cbt.utils.base import ensure_utc, utc_now
from cbt.utils.config import settings


def has_proctoring(school: School | None) -> bool:
    """Whether `school` may create proctored exams.

    Schools in `settings.proctoring_bypass_school_ids` skip the subscription check.
    """
    if school is None:
        return False
    if school.login_id in settings.proctoring_bypass_school_ids:
        return True
    if not school.proctored_exams:
        return False
    expires_at = ensure_utc(school.subscription_expires_at)
    return expires_at is None or expires_at > utc_now()
