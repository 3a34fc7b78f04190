# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackup Scheduling - Retry, bounded concurrency, and subprocess lifecycle.

Every external tool (pg_dump, pg_restore, psql, mysqldump, pigz, ...) is
started through the shared ProcessRegistry so that cancellation can fan out
to every child process group without races.
"""

import asyncio
import os
import random
import signal
from typing import Awaitable, Callable, Dict, Mapping, Sequence, Tuple, Type, TypeVar

import structlog

from dbbackup.exceptions import CancelledOperation, FatalError, OperationTimeout

logger = structlog.get_logger()

T = TypeVar("T")

# Seconds between SIGTERM and SIGKILL
TERMINATE_GRACE_SECONDS = 5.0


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    operation: str = "operation",
) -> T:
    """
    Call fn until it succeeds, sleeping with exponential backoff between tries.

    Delays use full jitter: a random value in [0, min(max_delay, base * 2**n)].
    Exceptions outside retry_on, and FatalError, propagate immediately.

    Args:
        fn: Zero-argument coroutine factory
        retries: Number of retries after the first attempt
        base_delay: Initial backoff in seconds
        max_delay: Upper bound for a single sleep
        retry_on: Exception types that trigger a retry
        operation: Name used in log events

    Returns:
        The first successful result of fn
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except FatalError:
            raise
        except retry_on as e:
            if attempt >= retries:
                logger.error(
                    "retry_exhausted",
                    operation=operation,
                    attempts=attempt + 1,
                    error=str(e),
                )
                raise
            delay = random.uniform(0, min(max_delay, base_delay * (2 ** attempt)))
            logger.warning(
                "retry_scheduled",
                operation=operation,
                attempt=attempt + 1,
                delay_seconds=round(delay, 2),
                error=str(e),
            )
            attempt += 1
            await asyncio.sleep(delay)


async def run_bounded(
    jobs: Mapping[str, Callable[[], Awaitable[T]]],
    limit: int,
) -> Dict[str, "T | BaseException"]:
    """
    Run named jobs with at most `limit` in flight.

    A FatalError from any job cancels every other job and is re-raised.
    Other exceptions are collected and returned in place of that job's result.

    Args:
        jobs: Mapping of job name to zero-argument coroutine factory
        limit: Maximum concurrent jobs

    Returns:
        Dict of job name to result or exception, in the order of `jobs`
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _run(factory: Callable[[], Awaitable[T]]) -> T:
        async with semaphore:
            return await factory()

    tasks = {
        asyncio.create_task(_run(factory), name=f"dbbackup:{name}"): name
        for name, factory in jobs.items()
    }
    results: Dict[str, "T | BaseException"] = {}

    try:
        pending = set(tasks)
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                name = tasks[task]
                if task.cancelled():
                    results[name] = CancelledOperation(f"Job cancelled: {name}")
                    continue
                exc = task.exception()
                if isinstance(exc, FatalError):
                    logger.error("fatal_error_cancelling_siblings", job=name, error=str(exc))
                    raise exc
                results[name] = exc if exc is not None else task.result()
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    return {name: results[name] for name in jobs if name in results}


async def with_timeout(awaitable: Awaitable[T], minutes: float, operation: str) -> T:
    """
    Await with a timeout, converting expiry into OperationTimeout.

    Timeout expiry cancels the inner work exactly like an interrupt would,
    so the same cleanup paths run.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=minutes * 60)
    except asyncio.TimeoutError as e:
        raise OperationTimeout(
            f"{operation} exceeded {minutes} minute timeout",
            details={"operation": operation, "timeout_minutes": minutes},
        ) from e


async def cancellable_sleep(seconds: float) -> None:
    """Sleep that stops immediately when the surrounding task is cancelled."""
    await asyncio.sleep(seconds)


class ProcessRegistry:
    """
    Tracks child processes so they can be terminated as a group.

    Each child is started in its own session (process group), so terminating
    it also stops anything it spawned, such as a shell pipeline.
    """

    def __init__(self) -> None:
        self._processes: Dict[int, Tuple[asyncio.subprocess.Process, str]] = {}

    async def spawn(
        self,
        argv: Sequence[str],
        env: Mapping[str, str] | None = None,
        stdin: int | None = None,
        stdout: int | None = None,
        stderr: int | None = None,
    ) -> asyncio.subprocess.Process:
        """
        Start and track a subprocess.

        Args:
            argv: Program and arguments
            env: Full environment for the child (defaults to os.environ)
            stdin, stdout, stderr: asyncio.subprocess.PIPE, DEVNULL, or None

        Returns:
            The started process
        """
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=stdin,
            stdout=stdout,
            stderr=stderr,
            env=dict(env) if env is not None else None,
            start_new_session=True,
        )
        self._processes[proc.pid] = (proc, argv[0])
        logger.debug("process_started", pid=proc.pid, program=argv[0])
        return proc

    def untrack(self, proc: asyncio.subprocess.Process) -> None:
        self._processes.pop(proc.pid, None)

    async def wait(self, proc: asyncio.subprocess.Process) -> int:
        """Wait for a process to exit and stop tracking it."""
        try:
            return await proc.wait()
        finally:
            if proc.returncode is not None:
                self.untrack(proc)

    async def terminate(
        self,
        proc: asyncio.subprocess.Process,
        grace_seconds: float = TERMINATE_GRACE_SECONDS,
    ) -> None:
        """
        Stop a process group: SIGTERM, then SIGKILL after a grace period.
        """
        if proc.returncode is not None:
            self.untrack(proc)
            return

        _signal_group(proc.pid, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=grace_seconds)
        except asyncio.TimeoutError:
            _signal_group(proc.pid, signal.SIGKILL)
            await proc.wait()
        finally:
            self.untrack(proc)

        logger.debug("process_terminated", pid=proc.pid, returncode=proc.returncode)

    async def terminate_all(self) -> int:
        """Terminate every tracked process. Returns how many were running."""
        running = [proc for proc, _ in list(self._processes.values()) if proc.returncode is None]
        await asyncio.gather(
            *(asyncio.shield(self.terminate(proc)) for proc in running),
            return_exceptions=True,
        )
        if running:
            logger.warning("processes_terminated", count=len(running))
        return len(running)

    def sweep(self) -> list:
        """Return (and log) tracked processes that are still alive."""
        leaked = [
            (pid, program)
            for pid, (proc, program) in list(self._processes.items())
            if proc.returncode is None
        ]
        for pid, (proc, _) in list(self._processes.items()):
            if proc.returncode is not None:
                self._processes.pop(pid, None)
        if leaked:
            logger.warning("process_leak_detected", processes=leaked)
        return leaked

    def __len__(self) -> int:
        return len(self._processes)


def _signal_group(pid: int, sig: int) -> None:
    try:
        os.killpg(os.getpgid(pid), sig)
    except ProcessLookupError:
        # Already exited
        pass


# Shared registry for all engine subprocesses
process_registry = ProcessRegistry()
