"""Bounded store calls.

Every store call runs on a worker thread and the caller waits at most
`timeout` seconds. A call that times out keeps running in the background
but its outcome is ignored; callers treat it as failed.
"""

from concurrent.futures import Executor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, TypeVar

from src.ab.errors import ExperimentError, StoreUnavailable

T = TypeVar("T")


def call_store(
    executor: Executor,
    timeout: float,
    fn: Callable[..., T],
    *args: Any,
    op: str,
    on_done: Callable[[], None] | None = None,
) -> T:
    """Run fn(*args) on the executor, raising StoreUnavailable on timeout
    or backend failure.

    on_done runs once the call has really finished (or was cancelled before
    starting), which may be after this function has already given up on it.
    """
    try:
        future = executor.submit(fn, *args)
    except RuntimeError as exc:
        # Executor already shut down
        if on_done is not None:
            on_done()
        raise StoreUnavailable(f"{op} failed: {exc}") from exc
    if on_done is not None:
        future.add_done_callback(lambda _: on_done())
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as exc:
        future.cancel()
        raise StoreUnavailable(f"{op} timed out after {timeout}s") from exc
    except ExperimentError:
        raise
    except Exception as exc:
        raise StoreUnavailable(f"{op} failed: {exc}") from exc
