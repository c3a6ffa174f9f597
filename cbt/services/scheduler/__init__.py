from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Protocol

from rq import Queue
from rq_scheduler import Scheduler
from redis import Redis

from cbt.connections.redis import get_binary_redis


logger = logging.getLogger(__name__)

QUEUE_NAME = "cbt-jobs"


def _redis_conn() -> Redis:
    return get_binary_redis()


def get_scheduler() -> Scheduler:
    return Scheduler(queue_name=QUEUE_NAME, connection=_redis_conn())


def get_queue() -> Queue:
    return Queue(name=QUEUE_NAME, connection=_redis_conn())


def schedule_at(run_at: datetime, func: Callable, *args, **kwargs) -> None:
    sched = get_scheduler()
    if run_at.tzinfo is None:
        run_at = run_at.replace(tzinfo=timezone.utc)
    # rq-scheduler compares against naive UTC timestamps
    sched.enqueue_at(run_at.astimezone(timezone.utc).replace(tzinfo=None), func, *args, **kwargs)
    logger.info("Scheduled %s%s at %s", func.__name__, args, run_at.isoformat())


class DeferredJobs(Protocol):
    """Timed follow-ups the exam and session services ask for."""

    def end_exam_at(self, run_at: datetime, exam_id: str) -> None:
        ...

    def expire_session_at(self, run_at: datetime, session_id: str) -> None:
        ...
