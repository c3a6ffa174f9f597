"""Runs the timed exam jobs: `python -m cbt.worker`.

rq-scheduler moves due jobs onto the queue; run `rqscheduler` against the
same Redis alongside this worker.
"""
import logging
import sys

from rq import Worker

from cbt.connections.mongo import close_mongo, init_mongo
from cbt.connections.redis import close_redis, get_binary_redis, init_redis
from cbt.services.scheduler import get_queue
from cbt.utils.config import settings


logger = logging.getLogger(__name__)


def main() -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )
    init_mongo()
    init_redis()
    try:
        queue = get_queue()
        logger.info("Worker listening on %s", queue.name)
        Worker([queue], connection=get_binary_redis()).work()
    finally:
        close_redis()
        close_mongo()


if __name__ == "__main__":
    main()
