import logging
import sentry_sdk
from sentry_sdk.integrations.rq import RqIntegration
from rq import Worker
from rq.registry import ScheduledJobRegistry
from cohortflow.core.config import settings
from cohortflow.jobs.queue import queue, redis
from cohortflow.jobs.release_job import release_tick_job

logger = logging.getLogger(__name__)

def seed_release_tick() -> bool:
    """Start the release clock unless a tick is already queued or scheduled."""
    if len(ScheduledJobRegistry(queue=queue)) or queue.count:
        return False
    queue.enqueue(release_tick_job)
    logger.info("Seeded release tick on queue %s", settings.RQ_QUEUE)
    return True

if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    if settings.SENTRY_DSN:
        sentry_sdk.init(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT, integrations=[RqIntegration()])
    seed_release_tick()
    w = Worker([settings.RQ_QUEUE], connection=redis)
    w.work(with_scheduler=True)
