import logging
import redis
from redis.exceptions import LockNotOwnedError
from cohortflow.core.config import settings

logger = logging.getLogger(__name__)

redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)

TICK_LOCK_KEY = "cohortflow:release-tick:running"

class RedisTickGuard:
    """Non-overlap flag for release ticks shared by every worker process.

    Backed by a redis lock holding a per-guard token, so a guard only ever
    releases its own flag. The key expires after ``ttl`` seconds so a crashed
    tick cannot block the scheduler forever.
    """

    def __init__(self, client=None, key: str = TICK_LOCK_KEY, ttl: int | None = None):
        self.client = client if client is not None else redis_client
        self.key = key
        self.ttl = ttl or settings.RELEASE_TICK_LOCK_TTL_SECONDS
        self._lock = self.client.lock(key, timeout=self.ttl, blocking=False, thread_local=False)

    def acquire(self) -> bool:
        return bool(self._lock.acquire(blocking=False))

    def release(self) -> None:
        try:
            self._lock.release()
        except LockNotOwnedError:
            # the flag expired mid-tick and may now belong to another tick
            logger.warning("Release tick outlived its %ss lock; leaving %s to its current owner", self.ttl, self.key)
