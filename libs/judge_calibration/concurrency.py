"""
Bounded concurrent fan-out for judge calls.

Judge calls are slow, rate-limited network requests. Work is spread over a
bounded thread pool, each call carries a timeout, transient failures are
retried with backoff, and a batch can be cancelled part-way through.

Usage:
    outcomes = fan_out(judge_one, samples, max_workers=4, cancel_event=stop)
    for outcome in outcomes:
        if outcome.ok:
            ...
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from model_client.retry import call_with_retry

from .errors import JudgeTimeoutError, JudgeTransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class CallPolicy:
    """Timeout, retry and parallelism settings for judge calls."""

    timeout: float | None = 30.0
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    max_workers: int = 4

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")


@dataclass(frozen=True)
class TaskOutcome(Generic[R]):
    """Result of one fanned-out task: a value, an error, or cancelled."""

    index: int
    value: R | None = None
    error: BaseException | None = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled


def call_with_timeout(
    func: Callable[..., R],
    timeout: float | None,
    *args: Any,
    limiter: threading.BoundedSemaphore | None = None,
    **kwargs: Any,
) -> R:
    """
    Run ``func`` and give up waiting after ``timeout`` seconds.

    The call runs on a helper thread; when it times out its eventual result
    is discarded. A ``limiter`` slot is taken before the call starts and
    returned only when the call itself returns, so an abandoned call still
    counts against the limit until it really finishes.

    Raises:
        JudgeTimeoutError: If the call does not finish in time
    """
    if limiter is not None:
        limiter.acquire()

    def run() -> R:
        try:
            return func(*args, **kwargs)
        finally:
            if limiter is not None:
                limiter.release()

    if timeout is None:
        return run()

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="judge-call")
    try:
        future = executor.submit(run)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as e:
            # A call cancelled before it started never reaches run()'s release
            if future.cancel() and limiter is not None:
                limiter.release()
            raise JudgeTimeoutError(f"Judge call timed out after {timeout:.1f}s") from e
    finally:
        executor.shutdown(wait=False)


def guarded_call(
    func: Callable[..., R],
    policy: CallPolicy,
    *args: Any,
    limiter: threading.BoundedSemaphore | None = None,
    **kwargs: Any,
) -> R:
    """Call ``func`` with the policy's timeout, retrying transient failures."""
    return call_with_retry(
        call_with_timeout,
        func,
        policy.timeout,
        *args,
        max_attempts=policy.max_attempts,
        initial_delay=policy.initial_delay,
        max_delay=policy.max_delay,
        exponential_base=policy.exponential_base,
        retryable_exceptions=(JudgeTransientError,),
        limiter=limiter,
        **kwargs,
    )


def fan_out(
    func: Callable[[T], R],
    items: Iterable[T],
    max_workers: int = 4,
    cancel_event: threading.Event | None = None,
    isolate: tuple[type[BaseException], ...] = (Exception,),
) -> list[TaskOutcome[R]]:
    """
    Apply ``func`` to every item on a bounded pool.

    At most ``max_workers`` calls are in flight at once. Once
    ``cancel_event`` is set no new calls are started and any call that
    completes afterwards is discarded; both are reported as cancelled.

    Args:
        func: Work function applied to each item
        items: Work items
        max_workers: Maximum concurrent calls
        cancel_event: Optional event that cancels the remaining work
        isolate: Exception types recorded per item instead of propagated

    Returns:
        One TaskOutcome per item, in input order
    """
    work = list(items)
    if not work:
        return []

    outcomes: list[TaskOutcome[R]] = [
        TaskOutcome(index=i, cancelled=True) for i in range(len(work))
    ]

    def is_cancelled() -> bool:
        return cancel_event is not None and cancel_event.is_set()

    executor = ThreadPoolExecutor(
        max_workers=max(1, min(max_workers, len(work))),
        thread_name_prefix="judge-fanout",
    )
    pending: dict[Future[R], int] = {}
    next_index = 0

    def submit_next() -> None:
        nonlocal next_index
        if is_cancelled() or next_index >= len(work):
            return
        pending[executor.submit(func, work[next_index])] = next_index
        next_index += 1

    try:
        for _ in range(max_workers):
            submit_next()

        while pending:
            done, _ = wait(pending, return_when=FIRST_COMPLETED)

            if is_cancelled():
                logger.info(
                    f"Cancelled: discarding {len(pending)} in-flight and "
                    f"{len(work) - next_index} unstarted task(s)"
                )
                for future in pending:
                    future.cancel()
                pending.clear()
                break

            for future in done:
                index = pending.pop(future)
                try:
                    outcomes[index] = TaskOutcome(index=index, value=future.result())
                except isolate as e:
                    logger.debug(f"Task {index} failed: {e}")
                    outcomes[index] = TaskOutcome(index=index, error=e)
                submit_next()
    finally:
        executor.shutdown(wait=not is_cancelled(), cancel_futures=True)

    return outcomes
