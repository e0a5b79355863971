from __future__ import annotations

import logging
import uuid

import redis

from ..core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

# Delete the key only if it still holds our token
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class LockUnavailableError(Exception):
    """The lock service could not be reached, so exclusivity cannot be guaranteed."""


def _get_sync_redis() -> redis.Redis:
    """
    Create a fresh sync Redis client per call so Celery workers
    don't hold onto closed connections.
    """
    return redis.from_url(
        str(settings.REDIS_URL),
        decode_responses=True,
        socket_timeout=5,
        socket_connect_timeout=5,
    )


class RunLock:
    """
    Short-lived exclusive lock per job, held from the credit debit until the
    research runner has accepted the run.

    ``acquire`` returns a token or ``None`` when someone else holds the lock.
    Only the holder of the token can release it; an expired lock is simply
    gone, and a late release is a no-op.
    """

    def __init__(self, client_factory=_get_sync_redis, prefix: str = "writing-desk:research-lock"):
        self._client_factory = client_factory
        self.prefix = prefix

    def key(self, job_id: str) -> str:
        return f"{self.prefix}:{job_id}"

    def acquire(self, job_id: str, ttl_seconds: int) -> str | None:
        token = uuid.uuid4().hex
        client = self._client_factory()
        try:
            acquired = client.set(self.key(job_id), token, nx=True, ex=ttl_seconds)
        except redis.RedisError as exc:
            raise LockUnavailableError("Research lock service unavailable") from exc
        finally:
            client.close()
        if not acquired:
            logger.info("Research lock busy", extra={"job_id": job_id, "step": "lock_acquire", "status": "busy"})
            return None
        return token

    def release(self, job_id: str, token: str) -> bool:
        client = self._client_factory()
        try:
            released = client.eval(_RELEASE_SCRIPT, 1, self.key(job_id), token)
        except redis.RedisError:
            # The TTL frees the lock eventually
            logger.warning(
                "Could not release research lock",
                extra={"job_id": job_id, "step": "lock_release"},
                exc_info=True,
            )
            return False
        finally:
            client.close()
        return bool(released)
