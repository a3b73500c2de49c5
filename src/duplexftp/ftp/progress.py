"""Transfer progress reporting for duplexftp."""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class ProgressInfo:
    """Progress information for a running transfer."""
    name: str
    type: str
    bytes: int
    bytes_overall: int


# Type alias for progress callback
ProgressHandler = Callable[[ProgressInfo], None]


class ProgressTracker:
    """
    Counts bytes flowing over a data stream and reports them to a handler.

    Reports are throttled to one per ``interval`` seconds while bytes flow,
    plus a final one from ``update_and_stop``. ``bytes_overall`` accumulates
    over all transfers until the handler is replaced.
    """

    def __init__(self, interval: float = 0.5):
        """
        Initialize the tracker.

        Args:
            interval: Minimum seconds between two reports during a transfer
        """
        self.interval = interval
        self.bytes_overall = 0
        self._handler: Optional[ProgressHandler] = None
        self._lock = threading.Lock()
        self._stream = None
        self._name = ""
        self._type = ""
        self._bytes = 0
        self._last_report = 0.0

    def report_to(self, handler: Optional[ProgressHandler] = None) -> None:
        """
        Register a new handler and reset the overall counter.

        Args:
            handler: Callback for progress info, None disables reporting
        """
        with self._lock:
            self._handler = handler
            self.bytes_overall = 0

    def start(self, stream, name: str, type: str) -> None:
        """
        Start counting the bytes of a data stream.

        Args:
            stream: DataStream to observe
            name: Name associated with the transfer, e.g. the filename
            type: "upload", "download" or "list"
        """
        self.stop()
        with self._lock:
            self._stream = stream
            self._name = name
            self._type = type
            self._bytes = 0
            self._last_report = time.monotonic()
        stream.observer = self._on_bytes

    def stop(self) -> None:
        """Stop tracking without reporting."""
        with self._lock:
            stream, self._stream = self._stream, None
        if stream is not None and stream.observer == self._on_bytes:
            stream.observer = None

    def update_and_stop(self) -> None:
        """Report one more time, then stop tracking."""
        with self._lock:
            active = self._stream is not None
        if active:
            self._report()
        self.stop()

    def _on_bytes(self, count: int) -> None:
        with self._lock:
            if self._stream is None:
                return
            self._bytes += count
            self.bytes_overall += count
            now = time.monotonic()
            due = now - self._last_report >= self.interval
            if due:
                self._last_report = now
        if due:
            self._report()

    def _report(self) -> None:
        with self._lock:
            handler = self._handler
            info = ProgressInfo(
                name=self._name,
                type=self._type,
                bytes=self._bytes,
                bytes_overall=self.bytes_overall,
            )
        if handler:
            handler(info)
