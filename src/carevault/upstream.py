"""
Cancellable Upstream Calls

Record-store calls are blocking I/O with no timeout of their own. The core
runs them on a worker pool and waits with a deadline and an optional
caller-supplied cancellation event, so a hung store surfaces as Upstream
instead of hanging the request.

Notifier sends are dispatched to a second pool; a hung mail server can
exhaust that pool but never the one store calls wait on.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Optional

from .exceptions import CareVaultError, RecordNotFound, UniquenessError, Upstream


logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_WORKERS = 8
DEFAULT_BACKGROUND_WORKERS = 4
POLL_INTERVAL_SECONDS = 0.05

# Store errors the caller translates itself
PASSTHROUGH_ERRORS = (RecordNotFound, UniquenessError, CareVaultError)


class UpstreamCaller:
    """
    Runs blocking collaborator calls with a deadline and cancellation.

    Example:
        >>> caller = UpstreamCaller(timeout=2.0)
        >>> caller.call(store.find_by_identifier, kind, "a@x.com")
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SECONDS,
                 max_workers: int = DEFAULT_MAX_WORKERS,
                 background_workers: int = DEFAULT_BACKGROUND_WORKERS):
        self._timeout = timeout
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="carevault-upstream",
        )
        # Fire-and-forget work never queues behind or ahead of store calls
        self._background = ThreadPoolExecutor(
            max_workers=background_workers,
            thread_name_prefix="carevault-background",
        )

    @property
    def timeout(self) -> float:
        return self._timeout

    def call(self, fn: Callable[..., Any], *args: Any,
             cancel: Optional[threading.Event] = None,
             timeout: Optional[float] = None) -> Any:
        """
        Call `fn(*args)` on the pool and wait for its result.

        Args:
            fn: Blocking callable
            *args: Positional arguments
            cancel: Event that aborts the wait when set
            timeout: Overrides the default deadline for this call

        Returns:
            Whatever `fn` returns

        Raises:
            Upstream: On timeout, cancellation, or a failure inside `fn`
            RecordNotFound, UniquenessError: Passed through unchanged
        """
        name = getattr(fn, '__name__', 'upstream call')
        if cancel is not None and cancel.is_set():
            raise Upstream(detail=f"{name} cancelled before start")

        future = self._executor.submit(fn, *args)
        deadline = time.monotonic() + (timeout if timeout is not None else self._timeout)

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                future.cancel()
                logger.warning("%s timed out", name)
                raise Upstream(detail=f"{name} timed out")
            if cancel is not None and cancel.is_set():
                future.cancel()
                logger.info("%s cancelled by caller", name)
                raise Upstream(detail=f"{name} cancelled")
            try:
                return future.result(timeout=min(remaining, POLL_INTERVAL_SECONDS))
            except FutureTimeout:
                if future.done():
                    # fn itself raised a TimeoutError
                    raise Upstream(detail=f"{name} raised TimeoutError")
                continue
            except PASSTHROUGH_ERRORS:
                raise
            except Exception as e:
                logger.error("%s failed: %s", name, type(e).__name__)
                raise Upstream(detail=f"{name}: {e}") from e

    def dispatch(self, fn: Callable[..., Any], *args: Any,
                 on_error: Optional[Callable[[BaseException], None]] = None) -> Future:
        """
        Fire-and-forget: run `fn(*args)` in the background.

        Runs on a separate pool, so slow background work cannot delay
        call(). Failures are reported to `on_error` (or logged) and never
        raised.
        """
        future = self._background.submit(fn, *args)

        def _done(f: Future) -> None:
            if f.cancelled():
                return
            error = f.exception()
            if error is None:
                return
            if on_error is not None:
                on_error(error)
            else:
                logger.warning("Background call %s failed: %s",
                               getattr(fn, '__name__', fn), type(error).__name__)

        future.add_done_callback(_done)
        return future

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        self._background.shutdown(wait=wait)
