"""Request-scoped wiring of the exam services.

Routes never build collaborators themselves; tests override `get_notifier`,
`get_audit` and `get_deferred_jobs` through `app.dependency_overrides`.
"""
from __future__ import annotations

import redis
from fastapi import Depends, HTTPException

from cbt.connections.redis import get_redis
from cbt.models.user import User
from cbt.services.audit import ActivityLogAuditSink, AuditSink
from cbt.services.auth import get_current_user
from cbt.services.exam_lifecycle import ExamLifecycle
from cbt.services.exam_session import ExamSessionService
from cbt.services.jobs import RqDeferredJobs
from cbt.services.notifications import Notifier, RedisNotifier
from cbt.services.proctoring import ProctoringMonitor
from cbt.services.scheduler import DeferredJobs
from cbt.services.session_control import SessionControl
from cbt.utils.base import UserRole
from cbt.utils.config import settings


def get_notifier(client: redis.Redis = Depends(get_redis)) -> Notifier:
    return RedisNotifier(client)


def get_audit() -> AuditSink:
    return ActivityLogAuditSink()


def get_deferred_jobs() -> DeferredJobs | None:
    if not settings.enforce_time_limit:
        return None
    return RqDeferredJobs()


def get_lifecycle(
    notifier: Notifier = Depends(get_notifier),
    audit: AuditSink = Depends(get_audit),
    jobs: DeferredJobs | None = Depends(get_deferred_jobs),
) -> ExamLifecycle:
    return ExamLifecycle(notifier, audit, jobs)


def get_session_service(
    notifier: Notifier = Depends(get_notifier),
    audit: AuditSink = Depends(get_audit),
    jobs: DeferredJobs | None = Depends(get_deferred_jobs),
) -> ExamSessionService:
    return ExamSessionService(notifier, audit, jobs)


def get_monitor(
    notifier: Notifier = Depends(get_notifier),
    audit: AuditSink = Depends(get_audit),
) -> ProctoringMonitor:
    return ProctoringMonitor(notifier, audit)


def get_session_control(
    notifier: Notifier = Depends(get_notifier),
    audit: AuditSink = Depends(get_audit),
) -> SessionControl:
    return SessionControl(notifier, audit)


def require_role(*roles: UserRole):
    """Return a dependency resolving the current user if their role is one of `roles`."""
    allowed = {role.value for role in roles}

    def _dependency(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in allowed:
            raise HTTPException(status_code=403, detail="Not allowed for your role")
        return current_user

    return _dependency


require_teacher = require_role(UserRole.TEACHER)
require_student = require_role(UserRole.STUDENT)
