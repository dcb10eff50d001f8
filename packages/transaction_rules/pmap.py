"""Bounded, order-preserving parallel map over a thread pool.

``p_map(iterable, mapper, concurrency=...)`` keeps at most ``concurrency``
mapper calls in flight, pulls input lazily (large chunks are never copied
into the executor queue up front) and returns results in input order.

- ``stop_on_error=True`` (default): the first mapper error propagates and
  not-yet-started work is cancelled.
- ``stop_on_error=False``: every item runs; failures are raised together as
  an ``ExceptionGroup`` at the end.
- ``should_stop``: polled before each submission; once it returns True no new
  work starts, running calls finish, and ``CancelledError`` is raised.
- ``p_map_skip``: a mapper may return this sentinel to drop its item from the
  output while keeping the relative order of the rest.

Mappers must be thread-safe; the rule engine and normalizer are pure
functions over immutable inputs, which is what makes this safe to use.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from concurrent.futures import (
    FIRST_COMPLETED,
    CancelledError,
    Future,
    ThreadPoolExecutor,
    wait,
)
from typing import TypeVar

InT = TypeVar("InT")
OutT = TypeVar("OutT")


class _Skip:
    __slots__ = ()

    def __repr__(self) -> str:  # pragma: no cover - trivial
        return "p_map_skip"


p_map_skip: object = _Skip()


def p_map(
    iterable: Iterable[InT],
    mapper: Callable[[InT], OutT | object],
    *,
    concurrency: int,
    stop_on_error: bool = True,
    should_stop: Callable[[], bool] | None = None,
    thread_name_prefix: str = "tr-worker",
) -> list[OutT]:
    """Map ``iterable`` through ``mapper`` with bounded concurrency.

    Parameters
    ----------
    iterable:
        Input items; consumed lazily.
    mapper:
        Called once per item on a worker thread.
    concurrency:
        Maximum number of in-flight mapper calls (>= 1).
    stop_on_error:
        Fail fast on the first error (default) or collect all errors.
    should_stop:
        Optional cancellation callback checked before each submission.
    thread_name_prefix:
        Worker thread name prefix, visible in logs and thread dumps.
    """

    if not isinstance(concurrency, int) or concurrency < 1:
        raise ValueError("concurrency must be a positive integer")

    items = enumerate(iterable)
    results: dict[int, OutT | object] = {}
    errors: list[Exception] = []
    pending: dict[Future, int] = {}
    submitted = 0
    stopped = False
    exhausted = False

    def _next(pool: ThreadPoolExecutor) -> bool:
        nonlocal submitted, stopped, exhausted
        if stopped or exhausted:
            return False
        if should_stop is not None and should_stop():
            stopped = True
            return False
        try:
            idx, item = next(items)
        except StopIteration:
            exhausted = True
            return False
        pending[pool.submit(mapper, item)] = idx
        submitted += 1
        return True

    with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix=thread_name_prefix) as pool:
        for _ in range(concurrency):
            if not _next(pool):
                break

        while pending:
            done, _ = wait(set(pending), return_when=FIRST_COMPLETED)
            for fut in done:
                idx = pending.pop(fut)
                try:
                    results[idx] = fut.result()
                except Exception as exc:  # noqa: BLE001
                    if stop_on_error:
                        pool.shutdown(wait=False, cancel_futures=True)
                        raise
                    errors.append(exc)
            for _ in range(len(done)):
                if not _next(pool):
                    break

    if errors:
        raise ExceptionGroup("p_map: one or more mapper calls failed", errors)
    if stopped:
        raise CancelledError(f"p_map stopped after {submitted} submitted items")

    out: list[OutT] = []
    for i in range(submitted):
        val = results.get(i, p_map_skip)
        if val is not p_map_skip:
            out.append(val)  # type: ignore[arg-type]
    return out


__all__ = ["p_map", "p_map_skip"]
