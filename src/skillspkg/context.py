from __future__ import annotations

import threading
import time
import weakref
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import TypeVar

from .errors import OperationCancelledError

T = TypeVar("T")

DEFAULT_MAX_WORKERS = 8


class Context:
    """
    Cancellation scope shared by the workers of one operation.

    A context is cancelled explicitly, when its deadline passes, or when its
    parent is cancelled. Long-running steps call ``check()`` between units
    of work (network chunks, subprocess polls, file copies).
    """

    def __init__(self, *, timeout_s: float | None = None, parent: Context | None = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: weakref.WeakSet[Context] = weakref.WeakSet()
        self._cause: BaseException | None = None

        deadline = time.monotonic() + timeout_s if timeout_s is not None else None
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self.deadline = deadline

        if parent is not None:
            parent._attach(self)

    @classmethod
    def background(cls) -> Context:
        return cls()

    def child(self, *, timeout_s: float | None = None) -> Context:
        return Context(timeout_s=timeout_s, parent=self)

    def _attach(self, child: Context) -> None:
        with self._lock:
            already = self._event.is_set()
            if not already:
                self._children.add(child)
        if already:
            child.cancel(self._cause)

    def cancel(self, cause: BaseException | None = None) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._cause = cause
            self._event.set()
            children = list(self._children)
        for c in children:
            c.cancel(cause)

    @property
    def cause(self) -> BaseException | None:
        return self._cause

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self.deadline is not None and time.monotonic() >= self.deadline:
            self.cancel(TimeoutError("deadline exceeded"))
            return True
        return False

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def wait(self, timeout_s: float) -> bool:
        """Sleep up to ``timeout_s`` seconds; returns True if cancelled meanwhile."""
        left = self.remaining()
        if left is not None:
            timeout_s = min(timeout_s, left)
        self._event.wait(timeout_s)
        return self.cancelled

    def check(self, what: str = "operation") -> None:
        if not self.cancelled:
            return
        cause = self._cause
        if isinstance(cause, TimeoutError):
            raise OperationCancelledError(f"{what} cancelled: deadline exceeded")
        raise OperationCancelledError(f"{what} cancelled")


def _run_task(ctx: Context, task: Callable[[Context], T]) -> T:
    ctx.check()
    return task(ctx)


def run_group(
    ctx: Context,
    tasks: Sequence[Callable[[Context], T]],
    *,
    max_workers: int | None = None,
) -> list[T]:
    """
    Run ``tasks`` concurrently and return their results in input order.

    Each task receives a child context of ``ctx``. The first task to raise
    cancels that child context and every task that has not started yet; the
    call still waits for running tasks to return before re-raising the
    first error.
    """
    if not tasks:
        return []

    group_ctx = ctx.child()
    workers = max_workers or min(len(tasks), DEFAULT_MAX_WORKERS)
    results: list[T | None] = [None] * len(tasks)
    first_error: BaseException | None = None

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="skillspkg") as pool:
        futures: dict[Future[T], int] = {
            pool.submit(_run_task, group_ctx, task): i for i, task in enumerate(tasks)
        }
        for fut in as_completed(futures):
            if fut.cancelled():
                continue
            exc = fut.exception()
            if exc is not None:
                if first_error is None:
                    first_error = exc
                    group_ctx.cancel(exc)
                    for other in futures:
                        other.cancel()
                continue
            results[futures[fut]] = fut.result()

    if first_error is not None:
        raise first_error
    return results  # type: ignore[return-value]
