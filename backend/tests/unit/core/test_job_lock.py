# backend/tests/unit/core/test_job_lock.py
"""Tests for the scheduler's single-flight job locks."""

import threading
from unittest.mock import MagicMock

from mentr.core.job_lock import LocalJobLock, RedisJobLock, build_job_lock, job_lock


class _ExpiringRedis:
    """Just enough of a Redis client for SET NX and the token-checked release."""

    def __init__(self):
        self.store = {}

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    def eval(self, script, numkeys, key, token):
        if self.store.get(key) == token:
            del self.store[key]
            return 1
        return 0

    def expire_all(self):
        self.store.clear()


class TestLocalJobLock:
    def test_second_acquire_is_refused_until_release(self):
        lock = LocalJobLock()

        assert lock.acquire("payout_sweep", 60) is True
        assert lock.acquire("payout_sweep", 60) is False
        assert lock.acquire("refund_expiry", 60) is True

        lock.release("payout_sweep")
        assert lock.acquire("payout_sweep", 60) is True

    def test_expired_hold_can_be_taken_over(self):
        lock = LocalJobLock()
        assert lock.acquire("payout_sweep", 0) is True
        assert lock.acquire("payout_sweep", 60) is True

    def test_release_from_another_thread_keeps_hold(self):
        lock = LocalJobLock()
        assert lock.acquire("payout_sweep", 60) is True

        other = threading.Thread(target=lock.release, args=("payout_sweep",))
        other.start()
        other.join()

        assert lock.acquire("payout_sweep", 60) is False


class TestJobLockContext:
    def test_releases_on_exit(self):
        lock = LocalJobLock()
        with job_lock(lock, "dispatch_notifications", 60) as acquired:
            assert acquired is True
            with job_lock(lock, "dispatch_notifications", 60) as nested:
                assert nested is False
        assert lock.acquire("dispatch_notifications", 60) is True

    def test_does_not_release_a_lock_it_did_not_take(self):
        lock = LocalJobLock()
        lock.acquire("payout_sweep", 60)
        with job_lock(lock, "payout_sweep", 60) as acquired:
            assert acquired is False
        # Still held by the first owner
        assert lock.acquire("payout_sweep", 60) is False


class TestRedisJobLock:
    def test_uses_set_nx_ex(self):
        client = MagicMock()
        client.set.return_value = True
        lock = RedisJobLock(client=client)

        assert lock.acquire("payout_sweep", 900) is True

        args, kwargs = client.set.call_args
        assert args[0] == "mentr:scheduler:payout_sweep:mutex"
        assert kwargs == {"nx": True, "ex": 900}

    def test_blocked_when_key_exists(self):
        client = MagicMock()
        client.set.return_value = None
        lock = RedisJobLock(client=client)

        assert lock.acquire("payout_sweep", 900) is False

    def test_release_deletes_only_own_token(self):
        client = MagicMock()
        client.set.return_value = True
        client.eval.return_value = 1
        lock = RedisJobLock(client=client)
        lock.acquire("payout_sweep", 900)
        token = client.set.call_args.args[1]

        lock.release("payout_sweep")

        script, numkeys, key, released_token = client.eval.call_args.args
        assert numkeys == 1
        assert key == "mentr:scheduler:payout_sweep:mutex"
        assert released_token == token
        client.delete.assert_not_called()

    def test_release_without_acquire_is_noop(self):
        client = MagicMock()
        lock = RedisJobLock(client=client)

        lock.release("payout_sweep")

        client.eval.assert_not_called()

    def test_expired_owner_cannot_free_successor(self):
        redis = _ExpiringRedis()
        first = RedisJobLock(client=redis)
        second = RedisJobLock(client=redis)
        third = RedisJobLock(client=redis)

        assert first.acquire("payout_sweep", 1) is True
        redis.expire_all()
        assert second.acquire("payout_sweep", 900) is True

        first.release("payout_sweep")

        assert third.acquire("payout_sweep", 900) is False
        second.release("payout_sweep")
        assert third.acquire("payout_sweep", 900) is True

    def test_redis_error_falls_back_to_local_lock(self):
        client = MagicMock()
        client.set.side_effect = ConnectionError("redis down")
        lock = RedisJobLock(client=client)

        assert lock.acquire("payout_sweep", 900) is True
        assert lock.acquire("payout_sweep", 900) is False

        lock.release("payout_sweep")
        client.delete.assert_not_called()
        assert lock.acquire("payout_sweep", 900) is True


def test_build_job_lock_local_backend():
    assert isinstance(build_job_lock("local"), LocalJobLock)
    assert isinstance(build_job_lock("redis"), RedisJobLock)
