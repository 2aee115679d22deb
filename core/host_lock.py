"""
Distributed host lock backed by Redis.

One lock per hostname: the hash LOCK__<hostname> with field id__ip holding
the owner token "<id>__<address>". The key's presence is the lock.

Acquisition is a single HSETNX round-trip. Release is a server-side
compare-and-delete script, so neither path does read-modify-write in
Python. Any Redis failure is raised as StoreError; an unreachable store is
never treated as a free lock.

Usage:
    from core.host_lock import HostLockManager, LockStatus

    locks = HostLockManager(get_redis())
    attempt = locks.try_acquire("web-shop-001", "biz-shop__10.0.0.7")
    if attempt.status is LockStatus.HELD and not locks.is_idempotent_retry(
        attempt.stored_owner, "biz-shop__10.0.0.7"
    ):
        ...
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import redis

from config.redis_client import LockKeys
from core.errors import StoreError

logger = logging.getLogger(__name__)

# KEYS[1] lock key, ARGV[1] owner field, ARGV[2] expected owner ('' = any)
# Returns {code, stored}: 1 deleted, 0 owner mismatch, -1 no lock
RELEASE_SCRIPT = """
local stored = redis.call('HGET', KEYS[1], ARGV[1])
if not stored then
    return {-1, ''}
end
if ARGV[2] ~= '' and stored ~= ARGV[2] then
    return {0, stored}
end
redis.call('DEL', KEYS[1])
return {1, stored}
"""


class LockStatus(Enum):
    """Outcome of an acquisition attempt."""

    ACQUIRED = "acquired"
    HELD = "held"


class ReleaseStatus(Enum):
    """Outcome of a release attempt."""

    RELEASED = "released"
    MISMATCH = "mismatch"
    NOT_FOUND = "not_found"


@dataclass
class LockAttempt:
    """Result of try_acquire. stored_owner is set when the lock was already held."""
    key: str
    status: LockStatus
    stored_owner: str = ""

    @property
    def acquired(self) -> bool:
        return self.status is LockStatus.ACQUIRED


@dataclass
class ReleaseResult:
    """Result of release."""
    key: str
    status: ReleaseStatus
    stored_owner: str = ""


class HostLockManager:
    """Register, verify and release per-hostname locks."""

    def __init__(self, client: redis.Redis):
        self.client = client
        self._release = client.register_script(RELEASE_SCRIPT)

    def try_acquire(self, hostname: str, owner: str) -> LockAttempt:
        """
        Claim the lock for hostname with a single HSETNX.

        When the lock is held the stored owner is read back for the caller
        to compare. If the holder released it between the two commands the
        claim is attempted once more.

        Raises:
            StoreError: Redis unreachable or failing
        """
        key = LockKeys.host(hostname)
        try:
            for _ in range(2):
                if self.client.hsetnx(key, LockKeys.OWNER_FIELD, owner):
                    logger.info(f"Lock acquired: {key} owner={owner}")
                    return LockAttempt(key=key, status=LockStatus.ACQUIRED)

                stored = self.client.hget(key, LockKeys.OWNER_FIELD)
                if stored is not None:
                    return LockAttempt(key=key, status=LockStatus.HELD, stored_owner=stored)
        except redis.RedisError as e:
            logger.error(f"Lock store error acquiring {key}: {e}")
            raise StoreError(f"redis error: {e}") from e

        raise StoreError(f"lock {key} changed hands while being read; retry the request")

    @staticmethod
    def is_idempotent_retry(stored_owner: str, owner: str) -> bool:
        """A held lock may be re-entered only by the exact same owner token."""
        return stored_owner == owner

    def release(self, hostname: str, expected_owner: Optional[str] = None) -> ReleaseResult:
        """
        Delete the lock if its owner matches expected_owner.

        With no expected_owner the lock is deleted unconditionally. This is
        the administrative override used by unregistration without id/address.

        Raises:
            StoreError: Redis unreachable or failing
        """
        key = LockKeys.host(hostname)
        try:
            code, stored = self._release(
                keys=[key], args=[LockKeys.OWNER_FIELD, expected_owner or ""]
            )
        except redis.RedisError as e:
            logger.error(f"Lock store error releasing {key}: {e}")
            raise StoreError(f"redis error: {e}") from e

        code = int(code)
        if code == 1:
            if expected_owner:
                logger.info(f"Lock released: {key} owner={stored}")
            else:
                logger.warning(f"Lock force-released without owner check: {key} owner={stored}")
            return ReleaseResult(key=key, status=ReleaseStatus.RELEASED, stored_owner=stored)
        if code == 0:
            return ReleaseResult(key=key, status=ReleaseStatus.MISMATCH, stored_owner=stored)
        return ReleaseResult(key=key, status=ReleaseStatus.NOT_FOUND)
