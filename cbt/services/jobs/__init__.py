"""rq job entry points for the timed parts of the exam lifecycle.

Workers import these by path, so they build their own collaborators instead
of receiving them from a request.
"""
from __future__ import annotations

import logging
from datetime import datetime

from cbt.connections.redis import get_redis
from cbt.services.audit import ActivityLogAuditSink
from cbt.services.exam_lifecycle import ExamLifecycle
from cbt.services.exam_session import ExamSessionService
from cbt.services.notifications import RedisNotifier
from cbt.services.scheduler import schedule_at


logger = logging.getLogger(__name__)


def _notifier() -> RedisNotifier:
    # cbt.worker initialises Redis and Mongo before taking jobs
    return RedisNotifier(get_redis())


def end_exam_job(exam_id: str) -> int:
    terminated = ExamLifecycle(_notifier(), ActivityLogAuditSink()).auto_end(exam_id)
    logger.info("Scheduled end of exam %s terminated %s sessions", exam_id, terminated)
    return terminated


def expire_session_job(session_id: str) -> bool:
    session = ExamSessionService(_notifier(), ActivityLogAuditSink()).expire(session_id)
    return session is not None


class RqDeferredJobs:
    """Schedules the jobs above through rq-scheduler."""

    def end_exam_at(self, run_at: datetime, exam_id: str) -> None:
        schedule_at(run_at, end_exam_job, exam_id)

    def expire_session_at(self, run_at: datetime, session_id: str) -> None:
        schedule_at(run_at, expire_session_job, session_id)
