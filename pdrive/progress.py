"""
Progress reporting.

The session manager pushes ProgressEvents to a reporter synchronously from
the upload loop and its workers. Reporters must return quickly; anything
slow (terminal rendering) goes through QueueingReporter.
"""

import logging
import queue
import threading
import time
from typing import Callable, Optional, Protocol

from pdrive.models import EventType, ProgressCallback, ProgressEvent, UploadProgress

logger = logging.getLogger(__name__)


class ProgressReporter(Protocol):
    """Passive sink for upload events."""

    def on_event(self, event: ProgressEvent) -> None: ...


class NullReporter:
    """Discards every event."""

    def on_event(self, event: ProgressEvent) -> None:
        pass


class CallbackReporter:
    """Adapts a plain callable into a reporter."""

    def __init__(self, callback: Callable[[ProgressEvent], None]) -> None:
        self._callback = callback

    def on_event(self, event: ProgressEvent) -> None:
        self._callback(event)


class ProgressTracker:
    """
    Folds events into byte and part counters.

    Thread-safe: part events may arrive from several workers at once.
    An optional callback receives an UploadProgress after every completed part.
    """

    def __init__(self, progress_callback: Optional[ProgressCallback] = None) -> None:
        self._lock = threading.Lock()
        self._callback = progress_callback
        self._started_at: Optional[float] = None
        self.total_bytes = 0
        self.total_parts = 1
        self.bytes_uploaded = 0
        self.parts_completed = 0

    def on_event(self, event: ProgressEvent) -> None:
        with self._lock:
            payload = event.payload
            if self._started_at is None:
                self._started_at = time.monotonic()
            if "total_bytes" in payload:
                self.total_bytes = payload["total_bytes"]
            if "total_parts" in payload:
                self.total_parts = payload["total_parts"]

            if event.type == EventType.PART_COMPLETED:
                self.bytes_uploaded = payload.get("bytes_uploaded", self.bytes_uploaded)
                self.parts_completed = payload.get("parts_completed", self.parts_completed + 1)
            elif event.type == EventType.UPLOAD_COMPLETED:
                self.bytes_uploaded = self.total_bytes
                self.parts_completed = self.total_parts
            else:
                return
            progress = self.snapshot()

        if self._callback:
            self._callback(progress)

    def snapshot(self) -> UploadProgress:
        elapsed = time.monotonic() - self._started_at if self._started_at else 0
        speed = self.bytes_uploaded / elapsed if elapsed > 0 else None
        return UploadProgress.from_bytes(
            self.bytes_uploaded,
            self.total_bytes,
            chunks_completed=self.parts_completed,
            total_chunks=self.total_parts,
            speed_bps=speed,
        )


class QueueingReporter:
    """
    Buffers events and hands them to a slower reporter on a background thread.

    on_event only enqueues, so a blocking renderer never stalls uploads.
    Call close() (or use as a context manager) to drain the queue.
    """

    _STOP = object()

    def __init__(self, inner: ProgressReporter, maxsize: int = 0) -> None:
        self._inner = inner
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=maxsize)
        self._thread = threading.Thread(target=self._run, name="pdrive-progress", daemon=True)
        self._thread.start()

    def on_event(self, event: ProgressEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.debug("Progress queue full, dropping %s event", event.type.value)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is self._STOP:
                return
            try:
                self._inner.on_event(item)  # type: ignore[arg-type]
            except Exception:
                logger.exception("Progress reporter failed")

    def close(self, timeout: Optional[float] = 5.0) -> None:
        self._queue.put(self._STOP)
        self._thread.join(timeout)

    def __enter__(self) -> "QueueingReporter":
        return self

    def __exit__(self, *args) -> None:
        self.close()
