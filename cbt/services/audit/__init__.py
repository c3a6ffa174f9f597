from __future__ import annotations

import logging
from typing import Any, Protocol

from cbt.models.activity_log import ActivityLog
from cbt.models.base import reference_id
from cbt.models.user import User
from cbt.utils.base import AuditAction, Severity


logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    def record(
        self,
        action: AuditAction,
        actor: User,
        metadata: dict[str, Any] | None = None,
        severity: Severity = Severity.LOW,
    ) -> None:
        ...


class ActivityLogAuditSink:
    """Writes audit entries as `ActivityLog` documents.

    Best-effort: a failed write is logged and never reaches the caller.
    """

    def record(
        self,
        action: AuditAction,
        actor: User,
        metadata: dict[str, Any] | None = None,
        severity: Severity = Severity.LOW,
    ) -> None:
        try:
            ActivityLog(
                school=reference_id(actor, "school"),
                user=actor.id,
                user_name=actor.name,
                user_role=actor.role,
                action=action.value,
                severity=severity.value,
                metadata=dict(metadata or {}),
            ).save()
        except Exception:
            logger.exception("Activity log failed for %s by user %s", action.value, actor.id)
