import uuid
import logging
from typing import Optional
import redis

from .config import SETTINGS, Settings
from .errors import LockUnavailable
from .metrics import branch_lock_total

logger = logging.getLogger(__name__)

# Delete the key only if it is still owned by the caller.
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


class BranchLock:
    """Redis-backed mutual exclusion for publishes targeting the same branch.

    Keys expire after ``redis_lock_ttl_seconds`` so a crashed holder cannot
    wedge a branch forever.
    """

    def __init__(self, client: Optional[redis.Redis] = None, settings: Optional[Settings] = None):
        self.settings = settings or SETTINGS
        self.r = client or redis.Redis.from_url(self.settings.redis_url, decode_responses=True)

    def key(self, owner: str, repo: str, branch: str) -> str:
        return self.settings.redis_key("lock", f"{owner}/{repo}", branch)

    def acquire(self, owner: str, repo: str, branch: str) -> Optional[str]:
        """Take the lock, returning the holder id, or ``None`` if it is held elsewhere.

        Raises ``LockUnavailable`` when Redis cannot be reached.
        """
        holder = str(uuid.uuid4())
        try:
            ok = self.r.set(self.key(owner, repo, branch), holder, nx=True, ex=self.settings.redis_lock_ttl_seconds)
        except redis.RedisError as e:
            branch_lock_total.labels(result="error").inc()
            raise LockUnavailable(f"cannot lock {owner}/{repo}:{branch}: {e}") from e
        if ok:
            branch_lock_total.labels(result="acquired").inc()
            logger.debug("Acquired lock for %s/%s:%s (holder=%s)", owner, repo, branch, holder)
            return holder
        branch_lock_total.labels(result="busy").inc()
        return None

    def release(self, owner: str, repo: str, branch: str, holder: str) -> bool:
        """Release the lock if still held by ``holder``. Redis errors are logged, not raised."""
        try:
            released = bool(self.r.eval(_RELEASE_SCRIPT, 1, self.key(owner, repo, branch), holder))
        except redis.RedisError as e:
            logger.warning("Failed to release lock for %s/%s:%s (holder=%s); it will expire: %s", owner, repo, branch, holder, e)
            return False
        logger.debug("Released lock for %s/%s:%s (holder=%s, released=%s)", owner, repo, branch, holder, released)
        return released
