"""Unit tests for retry.py - Conflict retries and backoff."""

from unittest.mock import AsyncMock, patch

import pytest

from cluster import FINALIZER_NAME, ObjectKey
from retry import (
    DEFAULT_RETRY,
    ReadModifyWrite,
    RetryBackoff,
    apply_with_retry,
    compute_backoff_delay,
    retry_on_conflict,
)
from store import ConflictError, NotFoundError, StoreError

from conftest import make_cluster

NO_SLEEP = RetryBackoff(steps=5, duration=0, jitter=0)


class TestRetryBackoff:
    """Tests for RetryBackoff delays."""

    def test_default_policy(self):
        assert DEFAULT_RETRY.steps == 5
        assert DEFAULT_RETRY.duration == 0.01
        assert DEFAULT_RETRY.factor == 1.0
        assert DEFAULT_RETRY.jitter == 0.1

    def test_one_delay_between_each_attempt(self):
        assert len(list(RetryBackoff(steps=5).delays())) == 4
        assert list(RetryBackoff(steps=1).delays()) == []

    def test_exponential_without_jitter(self):
        backoff = RetryBackoff(steps=4, duration=1, factor=2, jitter=0)
        assert list(backoff.delays()) == [1, 2, 4]

    def test_cap(self):
        backoff = RetryBackoff(steps=5, duration=1, factor=3, jitter=0, cap=5)
        assert list(backoff.delays()) == [1, 3, 5, 5]

    def test_jitter_bounds(self):
        backoff = RetryBackoff(steps=50, duration=1, factor=1, jitter=0.5)
        for delay in backoff.delays():
            assert 1 <= delay <= 1.5


class TestComputeBackoffDelay:
    """Tests for failure backoff."""

    def test_exponential_growth(self):
        with patch("retry.random.random", return_value=0.5):
            assert compute_backoff_delay(0, base_delay=1, max_delay=1000) == 1
            assert compute_backoff_delay(3, base_delay=1, max_delay=1000) == 8

    def test_capped(self):
        with patch("retry.random.random", return_value=0.5):
            assert compute_backoff_delay(20, base_delay=60, max_delay=3600) == 3600

    def test_jitter_range(self):
        for _ in range(100):
            delay = compute_backoff_delay(0, base_delay=100, jitter_factor=0.1)
            assert 90 <= delay <= 110


@pytest.mark.asyncio
class TestRetryOnConflict:
    """Tests for retry_on_conflict."""

    async def test_success_first_time(self):
        operation = AsyncMock(return_value="done")
        assert await retry_on_conflict(operation, NO_SLEEP) == "done"
        assert operation.await_count == 1

    async def test_conflict_then_success(self):
        operation = AsyncMock(side_effect=[ConflictError("stale"), "done"])
        assert await retry_on_conflict(operation, NO_SLEEP) == "done"
        assert operation.await_count == 2

    async def test_exhausted_raises_last_conflict(self):
        operation = AsyncMock(side_effect=ConflictError("stale"))
        with pytest.raises(ConflictError):
            await retry_on_conflict(operation, RetryBackoff(steps=3, duration=0))
        assert operation.await_count == 3

    async def test_other_errors_abort(self):
        operation = AsyncMock(side_effect=[StoreError("boom"), "done"])
        with pytest.raises(StoreError, match="boom"):
            await retry_on_conflict(operation, NO_SLEEP)
        assert operation.await_count == 1

    async def test_sleeps_between_attempts(self):
        operation = AsyncMock(side_effect=[ConflictError("a"), ConflictError("b"), 1])
        backoff = RetryBackoff(steps=5, duration=0.5, factor=2, jitter=0)
        with patch("retry.asyncio.sleep", new=AsyncMock()) as sleep:
            await retry_on_conflict(operation, backoff)
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]


@pytest.mark.asyncio
class TestApplyWithRetry:
    """Tests for read-modify-write against the store."""

    async def test_metadata_write(self, store):
        key = store.put(make_cluster())
        rmw = ReadModifyWrite(key, lambda c: c.finalizers.add(FINALIZER_NAME))

        cluster = await apply_with_retry(store, rmw, NO_SLEEP)

        assert FINALIZER_NAME in cluster.finalizers
        assert store.writes() == [("update", key)]

    async def test_status_write(self, store):
        key = store.put(make_cluster())

        def mutate(c):
            c.status.initialized = True

        await apply_with_retry(store, ReadModifyWrite(key, mutate, "status"), NO_SLEEP)

        assert store.cluster(key).status.initialized is True
        assert store.writes() == [("update_status", key)]

    async def test_rereads_after_conflict(self, store):
        key = store.put(make_cluster())
        store.conflicts["update"] = 2
        seen_versions = []

        def mutate(c):
            seen_versions.append(c.resource_version)
            c.finalizers.add(FINALIZER_NAME)

        await apply_with_retry(store, ReadModifyWrite(key, mutate), NO_SLEEP)

        assert len(seen_versions) == 3
        assert [c for c in store.calls if c[0] == "get"] == [("get", key)] * 3

    async def test_concurrent_writer_is_not_overwritten(self, store):
        key = store.put(make_cluster())
        writes = {"n": 0}

        def mutate(c):
            # Another client updates the object between our read and write
            if writes["n"] == 0:
                writes["n"] += 1
                other = store.objects[key]
                other["metadata"]["finalizers"] = ["other.io/guard"]
                store.put(other)
            c.finalizers.add(FINALIZER_NAME)

        await apply_with_retry(store, ReadModifyWrite(key, mutate), NO_SLEEP)

        assert store.cluster(key).finalizers.to_list() == [
            "other.io/guard",
            FINALIZER_NAME,
        ]

    async def test_not_found_aborts(self, store):
        rmw = ReadModifyWrite(ObjectKey("default", "gone"), lambda c: None)
        with pytest.raises(NotFoundError):
            await apply_with_retry(store, rmw, NO_SLEEP)

    async def test_unknown_subresource(self, store):
        key = store.put(make_cluster())
        with pytest.raises(ValueError):
            await apply_with_retry(store, ReadModifyWrite(key, lambda c: None, "scale"))
