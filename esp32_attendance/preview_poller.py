from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from .config import CameraConfig
from .endpoint_prober import normalize_base_url
from .exceptions import AttendanceError, FetchError
from .logger import setup_logger
from .snapshot_fetcher import FrameBuffer, SnapshotFetcher

FrameCallback = Callable[[FrameBuffer], None]
ErrorCallback = Callable[[Exception], None]


class PreviewPoller:
    """Keeps a latest frame fresh by fetching snapshots on a fixed interval.

    A single worker thread runs fetches back to back, so two fetches are
    never in flight at once. When a fetch outlasts the interval, the ticks
    that would have fired meanwhile collapse into one immediate fetch. A
    restart does not block on a worker still stuck in a fetch; the new
    worker waits for it before fetching.

    ``stop()`` bumps the session generation under the delivery lock; a fetch
    that completes afterwards sees a stale generation and its result is
    dropped, so no callback runs once ``stop()`` has returned.
    """

    def __init__(self, fetcher: SnapshotFetcher, interval_seconds: Optional[float] = None):
        self.fetcher = fetcher
        interval = fetcher.config.poll_interval_seconds if interval_seconds is None else interval_seconds
        self.interval_seconds = max(0.0, float(interval))
        self.logger = setup_logger(self.__class__.__name__)

        self._worker: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._delivery_lock = threading.RLock()
        self._generation = 0
        self._base_url: Optional[str] = None
        self._on_frame: Optional[FrameCallback] = None
        self._on_error: Optional[ErrorCallback] = None

        self.fetch_count = 0
        self.error_count = 0
        self.last_error: Optional[str] = None

    @property
    def active(self) -> bool:
        return self._worker is not None and self._worker.is_alive() and not self._stop_event.is_set()

    def start(
        self,
        base_url: Optional[str],
        on_frame: FrameCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        if self.active:
            return
        base = normalize_base_url(base_url)

        # A stopped worker may still be finishing a slow fetch; the new worker waits for it.
        previous = self._worker
        if previous is not None and not previous.is_alive():
            previous = None

        with self._delivery_lock:
            self._generation += 1
            generation = self._generation
            self._base_url = base
            self._on_frame = on_frame
            self._on_error = on_error
            self.last_error = None

        self._stop_event = threading.Event()
        self._worker = threading.Thread(
            target=self._run,
            args=(generation, self._stop_event, previous),
            name="esp32-preview-poller",
            daemon=True,
        )
        self._worker.start()
        self.logger.info("Preview polling started for %s every %.0f ms", base, self.interval_seconds * 1000)

    def stop(self) -> None:
        with self._delivery_lock:
            was_running = self._on_frame is not None
            self._generation += 1
            self._on_frame = None
            self._on_error = None
            self._stop_event.set()

        self._join_worker()
        if was_running:
            self.logger.info("Preview polling stopped")

    def _join_worker(self) -> None:
        worker = self._worker
        if worker is None or worker is threading.current_thread():
            return
        if worker.is_alive():
            worker.join(timeout=self.fetcher.config.snapshot_timeout_seconds + 1.0)
        if not worker.is_alive():
            self._worker = None

    def _run(
        self,
        generation: int,
        stop_event: threading.Event,
        previous: Optional[threading.Thread] = None,
    ) -> None:
        if previous is not None:
            previous.join()
        while not stop_event.is_set():
            started = time.monotonic()
            self._tick(generation)
            elapsed = time.monotonic() - started
            if stop_event.wait(max(0.0, self.interval_seconds - elapsed)):
                break

    def _tick(self, generation: int) -> None:
        base_url = self._base_url
        try:
            frame = self.fetcher.fetch_once(base_url)
        except AttendanceError as exc:
            self._deliver_error(generation, exc)
            return
        except Exception as exc:
            self.logger.exception("Unexpected preview fetch failure")
            self._deliver_error(generation, FetchError(str(exc), last_error=exc))
            return
        self._deliver_frame(generation, frame)

    def _deliver_frame(self, generation: int, frame: FrameBuffer) -> None:
        with self._delivery_lock:
            if generation != self._generation or self._on_frame is None:
                return
            self.fetch_count += 1
            self.last_error = None
            try:
                self._on_frame(frame)
            except Exception:
                self.logger.exception("Preview frame callback failed")

    def _deliver_error(self, generation: int, exc: Exception) -> None:
        with self._delivery_lock:
            if generation != self._generation:
                return
            self.error_count += 1
            self.last_error = str(exc)
            self.logger.warning("Preview fetch failed: %s", exc)
            if self._on_error is None:
                return
            try:
                self._on_error(exc)
            except Exception:
                self.logger.exception("Preview error callback failed")
