import logging
from contextlib import closing
from datetime import timedelta
from rq import get_current_job
from cohortflow.core.cache import RedisTickGuard
from cohortflow.core.config import settings
from cohortflow.core.database import SessionLocal
from cohortflow.jobs.queue import queue
from cohortflow.services.notifications import build_notifier
from cohortflow.services.release import ReleaseScheduler

logger = logging.getLogger(__name__)

def _meta(job, **values):
    if job is not None:
        job.meta.update(values); job.save_meta()

def release_tick_job(reschedule: bool = True):
    """One release tick. Re-enqueues itself so the clock keeps running after a failed tick."""
    job = get_current_job()
    _meta(job, state="running")
    db = SessionLocal()
    try:
        with closing(build_notifier()) as notifier:
            result = ReleaseScheduler(notifier, guard=RedisTickGuard()).tick(db)
        _meta(job, state="skipped" if result.skipped else "done", result=result.as_dict())
        return result.as_dict()
    except Exception:
        db.rollback()
        logger.exception("Release tick failed; retrying on the next tick")
        _meta(job, state="failed")
        raise
    finally:
        db.close()
        if reschedule:
            nxt = queue.enqueue_in(timedelta(minutes=settings.RELEASE_TICK_INTERVAL_MINUTES), release_tick_job)
            _meta(job, next_job_id=nxt.get_id())
