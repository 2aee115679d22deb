"""
Tests for the Redis-backed host lock.
"""

import threading
from unittest.mock import MagicMock

import pytest
import redis

from core.errors import StoreError
from core.host_lock import (
    HostLockManager,
    LockStatus,
    ReleaseStatus,
)

OWNER_A = "biz-goods__10.1.2.3"
OWNER_B = "biz-other__10.1.2.4"


class TestTryAcquire:
    """Tests for lock acquisition"""

    def test_acquire_free_lock(self, lock_manager, fake_redis):
        attempt = lock_manager.try_acquire("prod-goods-ms-001", OWNER_A)

        assert attempt.status is LockStatus.ACQUIRED
        assert attempt.acquired is True
        assert attempt.key == "LOCK__prod-goods-ms-001"
        assert fake_redis.hashes["LOCK__prod-goods-ms-001"] == {"id__ip": OWNER_A}

    def test_held_lock_reports_stored_owner(self, lock_manager):
        lock_manager.try_acquire("prod-goods-ms-001", OWNER_A)
        attempt = lock_manager.try_acquire("prod-goods-ms-001", OWNER_B)

        assert attempt.status is LockStatus.HELD
        assert attempt.stored_owner == OWNER_A

    def test_held_lock_never_overwritten(self, lock_manager, fake_redis):
        lock_manager.try_acquire("prod-goods-ms-001", OWNER_A)
        lock_manager.try_acquire("prod-goods-ms-001", OWNER_B)

        assert fake_redis.hashes["LOCK__prod-goods-ms-001"]["id__ip"] == OWNER_A

    def test_same_owner_sees_held(self, lock_manager):
        lock_manager.try_acquire("prod-goods-ms-001", OWNER_A)
        attempt = lock_manager.try_acquire("prod-goods-ms-001", OWNER_A)

        assert attempt.status is LockStatus.HELD
        assert lock_manager.is_idempotent_retry(attempt.stored_owner, OWNER_A)

    def test_single_round_trip_when_free(self):
        """HSETNX is the only command; no existence check precedes it"""
        client = MagicMock()
        client.hsetnx.return_value = 1
        manager = HostLockManager(client)

        manager.try_acquire("prod-goods-ms-001", OWNER_A)

        client.hsetnx.assert_called_once_with("LOCK__prod-goods-ms-001", "id__ip", OWNER_A)
        client.hget.assert_not_called()
        client.exists.assert_not_called()

    def test_retries_when_holder_released_in_between(self):
        client = MagicMock()
        client.hsetnx.side_effect = [0, 1]
        client.hget.return_value = None
        manager = HostLockManager(client)

        attempt = manager.try_acquire("prod-goods-ms-001", OWNER_A)

        assert attempt.acquired is True
        assert client.hsetnx.call_count == 2

    def test_gives_up_after_second_race(self):
        client = MagicMock()
        client.hsetnx.return_value = 0
        client.hget.return_value = None
        manager = HostLockManager(client)

        with pytest.raises(StoreError, match="changed hands"):
            manager.try_acquire("prod-goods-ms-001", OWNER_A)

    def test_store_unavailable_is_an_error(self, lock_manager, fake_redis):
        fake_redis.fail = True

        with pytest.raises(StoreError, match="redis error") as exc_info:
            lock_manager.try_acquire("prod-goods-ms-001", OWNER_A)
        assert exc_info.value.status_code == 503

    def test_concurrent_acquire_single_winner(self, lock_manager):
        """Different owners racing for one hostname: exactly one acquires"""
        for n in range(20):
            hostname = f"race-host-{n:03d}"
            owners = [f"biz-owner{i}__10.0.0.{i}" for i in range(8)]
            barrier = threading.Barrier(len(owners))
            results = []
            results_lock = threading.Lock()

            def contend(owner):
                barrier.wait()
                attempt = lock_manager.try_acquire(hostname, owner)
                with results_lock:
                    results.append((owner, attempt))

            threads = [threading.Thread(target=contend, args=(o,)) for o in owners]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            winners = [owner for owner, a in results if a.status is LockStatus.ACQUIRED]
            assert len(winners) == 1
            losers = [a for _, a in results if a.status is LockStatus.HELD]
            assert len(losers) == len(owners) - 1
            assert all(a.stored_owner == winners[0] for a in losers)


class TestIdempotentRetry:
    def test_equal_tokens(self):
        assert HostLockManager.is_idempotent_retry(OWNER_A, OWNER_A) is True

    def test_different_tokens(self):
        assert HostLockManager.is_idempotent_retry(OWNER_A, OWNER_B) is False

    def test_same_id_different_address(self):
        assert HostLockManager.is_idempotent_retry(
            "biz-goods__10.1.2.3", "biz-goods__10.1.2.9"
        ) is False


class TestRelease:
    """Tests for compare-and-delete release"""

    def test_release_matching_owner(self, lock_manager, fake_redis):
        lock_manager.try_acquire("prod-goods-ms-001", OWNER_A)

        result = lock_manager.release("prod-goods-ms-001", OWNER_A)

        assert result.status is ReleaseStatus.RELEASED
        assert result.stored_owner == OWNER_A
        assert "LOCK__prod-goods-ms-001" not in fake_redis.hashes

    def test_mismatch_leaves_lock(self, lock_manager, fake_redis):
        lock_manager.try_acquire("prod-goods-ms-001", OWNER_A)

        result = lock_manager.release("prod-goods-ms-001", OWNER_B)

        assert result.status is ReleaseStatus.MISMATCH
        assert result.stored_owner == OWNER_A
        assert fake_redis.hashes["LOCK__prod-goods-ms-001"]["id__ip"] == OWNER_A

    def test_forced_release_without_owner(self, lock_manager, fake_redis):
        lock_manager.try_acquire("prod-goods-ms-001", OWNER_A)

        result = lock_manager.release("prod-goods-ms-001")

        assert result.status is ReleaseStatus.RELEASED
        assert "LOCK__prod-goods-ms-001" not in fake_redis.hashes

    def test_release_unheld_lock(self, lock_manager):
        result = lock_manager.release("prod-goods-ms-001", OWNER_A)
        assert result.status is ReleaseStatus.NOT_FOUND

    def test_reacquire_after_release(self, lock_manager):
        lock_manager.try_acquire("prod-goods-ms-001", OWNER_A)
        lock_manager.release("prod-goods-ms-001", OWNER_A)

        attempt = lock_manager.try_acquire("prod-goods-ms-001", OWNER_B)
        assert attempt.acquired is True

    def test_release_passes_owner_to_script(self):
        client = MagicMock()
        script = client.register_script.return_value
        script.return_value = [1, OWNER_A]
        manager = HostLockManager(client)

        manager.release("prod-goods-ms-001", OWNER_A)

        script.assert_called_once_with(keys=["LOCK__prod-goods-ms-001"], args=["id__ip", OWNER_A])

    def test_release_store_error(self):
        client = MagicMock()
        client.register_script.return_value.side_effect = redis.ConnectionError("down")
        manager = HostLockManager(client)

        with pytest.raises(StoreError):
            manager.release("prod-goods-ms-001", OWNER_A)
