"""Background worker thread that drives :class:`QueueProcessor`.

The worker wakes up when a submission calls :meth:`QueueWorker.trigger` or
when ``poll_interval_seconds`` elapses, whichever comes first, and runs one
drain.  Triggers are idempotent: any number of triggers raised while a drain
is running collapse into a single follow-up drain.

Usage
-----
::

    worker = QueueWorker(processor, poll_interval_seconds=10)
    worker.start()
    manager = QueueManager(db, generations, queue, notify=worker.trigger)
    ...
    worker.stop()
"""

from __future__ import annotations

import logging
import threading

from remixer.core.processor import QueueProcessor

logger = logging.getLogger(__name__)


class QueueWorker:
    """Runs queue drains on a single daemon thread."""

    def __init__(self, processor: QueueProcessor, poll_interval_seconds: float = 10.0):
        self._processor = processor
        self._poll_interval = poll_interval_seconds
        self._wakeup = threading.Event()
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Start the worker thread.  Calling it twice is a no-op."""
        if self.is_running:
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._run, name="remixer-queue-worker", daemon=True)
        self._thread.start()
        logger.info(f"Queue worker started (poll interval {self._poll_interval}s)")

    def stop(self, timeout: float | None = 30.0) -> None:
        """Ask the worker to exit and wait for the current item to finish."""
        if self._thread is None:
            return
        self._stopping.set()
        self._wakeup.set()
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning("Queue worker did not stop within the timeout")
        else:
            logger.info("Queue worker stopped")
        self._thread = None

    def trigger(self) -> None:
        """Request a drain soon.  Safe to call from any thread."""
        self._wakeup.set()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stopping.is_set():
            self._wakeup.wait(self._poll_interval)
            self._wakeup.clear()
            if self._stopping.is_set():
                break
            try:
                self._processor.process_queue()
            except Exception:
                # Keep the thread alive; stale recovery picks up whatever
                # this drain left in ``processing``.
                logger.exception("Queue drain failed")
