"""
Serial request queue for model work.

Detection and embedding models are not safe to drive from several threads
at once, so every call into them goes through a :class:`QueueProcessor`.
Requests start strictly one after another in submission order.  Each request
runs on its own worker thread so that the dispatcher can give up on it
after a timeout: the caller's future fails with
:class:`~facesync.errors.TaskTimeoutError` straight away and whatever the
abandoned callable eventually returns is dropped.  The queue moves on
without waiting for it, so an abandoned call may still be running while
the next request starts; requests that finish within their timeout never
overlap.
"""

from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future, wait
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .errors import TaskTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class RequestHandle:
    """Caller side of a queued request."""
    future: Future

    def cancel(self) -> bool:
        """Withdraw the request if it has not started; returns ``True`` on success."""
        return self.future.cancel()

    def result(self, timeout: Optional[float] = None) -> Any:
        return self.future.result(timeout)


class QueueProcessor:
    """Run submitted callables one at a time on a background dispatcher.

    Parameters
    ----------
    name: str
        Name of the dispatcher thread, also used in log messages.
    """

    def __init__(self, name: str = "ml-queue") -> None:
        self.name = name
        self._queue: "queue.Queue[Optional[tuple]]" = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False
        self._seq = 0
        self._dispatcher = threading.Thread(target=self._run, name=name, daemon=True)
        self._dispatcher.start()

    def queue_up_request(self, fn: Callable[[], Any], timeout: Optional[float] = None) -> RequestHandle:
        """Enqueue ``fn`` and return a handle to its eventual result.

        Parameters
        ----------
        fn: callable
            Zero-argument callable to run on a worker thread.
        timeout: float, optional
            Seconds the request may run before it is abandoned.  ``None`` or
            a non-positive value waits indefinitely.
        """
        future: Future = Future()
        with self._lock:
            if self._closed:
                raise RuntimeError(f"Queue {self.name} has been shut down")
            self._seq += 1
            self._queue.put((self._seq, fn, timeout, future))
        return RequestHandle(future)

    def shutdown(self, wait_for_dispatcher: bool = True, cancel_pending: bool = False) -> None:
        """Stop accepting requests.

        Already queued requests still run unless ``cancel_pending`` is set.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if cancel_pending:
                self._cancel_pending()
            self._queue.put(None)
        if wait_for_dispatcher and threading.current_thread() is not self._dispatcher:
            self._dispatcher.join()

    def _cancel_pending(self) -> None:
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            if item is not None:
                item[3].cancel()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                logger.debug("Queue %s stopped", self.name)
                return
            seq, fn, timeout, future = item
            if not future.set_running_or_notify_cancel():
                logger.debug("Skipping cancelled request %d on %s", seq, self.name)
                continue
            self._execute(seq, fn, timeout, future)

    def _execute(self, seq: int, fn: Callable[[], Any], timeout: Optional[float],
                 outer: Future) -> None:
        inner: Future = Future()

        def work() -> None:
            try:
                value = fn()
            except Exception as exc:
                inner.set_exception(exc)
            else:
                inner.set_result(value)

        worker = threading.Thread(target=work, name=f"{self.name}-{seq}", daemon=True)
        worker.start()
        done, _ = wait([inner], timeout=timeout if timeout and timeout > 0 else None)
        if not done:
            logger.warning("Request %d on %s timed out after %.1fs", seq, self.name, timeout)
            outer.set_exception(TaskTimeoutError(f"Request timed out after {timeout}s"))
            inner.add_done_callback(
                lambda _f: logger.info("Discarding late result of timed out request %d", seq))
            return
        exc = inner.exception()
        if exc is not None:
            outer.set_exception(exc)
        else:
            outer.set_result(inner.result())
