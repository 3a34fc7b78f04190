# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Concurrency helper tests.

These tests verify:
1. Bounded jobs - the limit holds and ordinary failures stay isolated
2. Fatal errors - one fatal job cancels its siblings
3. Retries and timeouts
4. Child processes - tracked, terminated, and swept
"""

import asyncio

import pytest

from dbbackup.exceptions import (
    FatalError,
    IntegrityError,
    OperationTimeout,
    StorageError,
)
from dbbackup.scheduling import ProcessRegistry, retry_with_backoff, run_bounded, with_timeout


# ============================================================================
# Test 1: BOUNDED JOBS
# ============================================================================

@pytest.mark.asyncio
async def test_run_bounded_respects_limit():
    in_flight = 0
    peak = 0

    def job(value: int):
        async def _run() -> int:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return value * 2
        return _run

    results = await run_bounded({f"db{i}": job(i) for i in range(8)}, limit=3)

    assert peak == 3
    assert list(results) == [f"db{i}" for i in range(8)]
    assert results["db5"] == 10


@pytest.mark.asyncio
async def test_ordinary_failure_is_returned():
    async def ok() -> str:
        await asyncio.sleep(0.01)
        return "done"

    async def broken() -> str:
        raise StorageError("disk full")

    results = await run_bounded({"a": ok, "b": broken, "c": ok}, limit=2)

    assert results["a"] == "done"
    assert results["c"] == "done"
    assert isinstance(results["b"], StorageError)


# ============================================================================
# Test 2: FATAL ERRORS
# ============================================================================

@pytest.mark.asyncio
async def test_fatal_error_cancels_siblings():
    """CRITICAL: A fatal job stops the whole batch instead of running on."""
    cancelled = []

    async def slow() -> None:
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise

    async def fatal() -> None:
        await asyncio.sleep(0.01)
        raise FatalError("out of shared memory")

    with pytest.raises(FatalError):
        await asyncio.wait_for(run_bounded({"slow1": slow, "fatal": fatal, "slow2": slow}, limit=3), 5)

    assert len(cancelled) == 2


# ============================================================================
# Test 3: RETRIES AND TIMEOUTS
# ============================================================================

@pytest.mark.asyncio
async def test_retry_until_success():
    attempts = []

    async def flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise StorageError("throttled")
        return "uploaded"

    assert await retry_with_backoff(flaky, retries=3, base_delay=0) == "uploaded"
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_retry_gives_up():
    attempts = []

    async def always_fails() -> None:
        attempts.append(1)
        raise StorageError("unreachable")

    with pytest.raises(StorageError):
        await retry_with_backoff(always_fails, retries=2, base_delay=0)

    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_fatal_errors_are_not_retried():
    attempts = []

    async def corrupt() -> None:
        attempts.append(1)
        raise IntegrityError("checksum mismatch")

    with pytest.raises(IntegrityError):
        await retry_with_backoff(corrupt, retries=5, base_delay=0)

    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_with_timeout_raises_operation_timeout():
    with pytest.raises(OperationTimeout) as exc_info:
        await with_timeout(asyncio.sleep(10), minutes=0.001, operation="backup:app")

    assert exc_info.value.details["operation"] == "backup:app"


# ============================================================================
# Test 4: CHILD PROCESSES
# ============================================================================

@pytest.mark.asyncio
async def test_terminate_all_stops_children():
    registry = ProcessRegistry()
    proc = await registry.spawn(["sleep", "30"])

    assert len(registry) == 1
    assert await registry.terminate_all() == 1
    assert proc.returncode is not None
    assert registry.sweep() == []
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_sweep_reports_running_children():
    registry = ProcessRegistry()
    proc = await registry.spawn(["sleep", "30"])

    try:
        assert registry.sweep() == [(proc.pid, "sleep")]
    finally:
        await registry.terminate(proc, grace_seconds=1)

    assert registry.sweep() == []
