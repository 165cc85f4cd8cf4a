from __future__ import annotations

import threading
import time
from enum import Enum
from functools import partial
from typing import Callable, Optional

from .config import CameraConfig
from .endpoint_prober import normalize_base_url, stream_candidates
from .exceptions import StreamError
from .frame_validator import is_valid_frame
from .logger import setup_logger
from .mjpeg_stream import MjpegStreamReader
from .preview_poller import ErrorCallback, FrameCallback, PreviewPoller
from .snapshot_fetcher import FrameBuffer, SnapshotFetcher


class AcquisitionMode(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    STREAMING = "streaming"


class AcquisitionSession:
    """Single owner of one camera acquisition and its latest frame.

    Only one mode runs at a time: starting polling or streaming first tears
    down whatever was running. A failed or finished MJPEG stream falls back
    to snapshot polling against the same base URL.
    """

    def __init__(
        self,
        config: Optional[CameraConfig] = None,
        fetcher: Optional[SnapshotFetcher] = None,
        reader_factory: Optional[Callable[[], MjpegStreamReader]] = None,
    ):
        self.config = config or (fetcher.config if fetcher is not None else CameraConfig())
        self.fetcher = fetcher or SnapshotFetcher(self.config)
        self.poller = PreviewPoller(self.fetcher, interval_seconds=self.config.poll_interval_seconds)
        self._reader_factory = reader_factory or (lambda: MjpegStreamReader(self.config))
        self.logger = setup_logger(self.__class__.__name__)

        self._lock = threading.RLock()
        self._frame_ready = threading.Condition(self._lock)
        self._generation = 0
        self._mode = AcquisitionMode.IDLE
        self._base_url: Optional[str] = None
        self._frame: Optional[FrameBuffer] = None
        self._on_frame: Optional[FrameCallback] = None
        self._on_error: Optional[ErrorCallback] = None
        self._stream_reader: Optional[MjpegStreamReader] = None
        self._stream_thread: Optional[threading.Thread] = None
        self.last_error: Optional[str] = None
        self.frames_received = 0

    def __enter__(self) -> "AcquisitionSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    @property
    def mode(self) -> AcquisitionMode:
        with self._lock:
            return self._mode

    @property
    def active(self) -> bool:
        return self.mode is not AcquisitionMode.IDLE

    @property
    def base_url(self) -> Optional[str]:
        with self._lock:
            return self._base_url

    def current_frame(self) -> Optional[FrameBuffer]:
        with self._lock:
            return self._frame

    def wait_for_frame(self, timeout: float, newer_than: Optional[float] = None) -> Optional[FrameBuffer]:
        deadline = time.monotonic() + max(0.0, timeout)
        with self._frame_ready:
            while True:
                frame = self._frame
                if frame is not None and (newer_than is None or frame.received_at > newer_than):
                    return frame
                remaining = deadline - time.monotonic()
                if remaining <= 0.0:
                    return None
                self._frame_ready.wait(remaining)

    def capture(self, base_url: Optional[str] = None) -> FrameBuffer:
        url = base_url if base_url is not None else (self.base_url or self.config.base_url)
        return self.fetcher.fetch_once(url)

    def start_polling(
        self,
        base_url: Optional[str] = None,
        on_frame: Optional[FrameCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        base = normalize_base_url(self.config.base_url if base_url is None else base_url)
        self.stop()

        with self._lock:
            self._generation += 1
            self._begin(AcquisitionMode.POLLING, base, on_frame, on_error)
            self._start_poller(self._generation, base)
        self.logger.info("Acquisition session polling %s", base)

    def _start_poller(self, generation: int, base: str) -> None:
        # Caller holds self._lock; poller.start must not join a worker.
        self.poller.start(
            base,
            on_frame=partial(self._accept_frame, generation),
            on_error=partial(self._record_error, generation),
        )

    def start_streaming(
        self,
        base_url: Optional[str] = None,
        on_frame: Optional[FrameCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        base = normalize_base_url(self.config.base_url if base_url is None else base_url)
        self.stop()

        with self._lock:
            self._generation += 1
            generation = self._generation
            self._begin(AcquisitionMode.STREAMING, base, on_frame, on_error)
            reader = self._reader_factory()
            self._stream_reader = reader
            self._stream_thread = threading.Thread(
                target=self._stream_loop,
                args=(generation, base, reader),
                name="esp32-mjpeg-stream",
                daemon=True,
            )
            thread = self._stream_thread
        thread.start()
        self.logger.info("Acquisition session streaming from %s", base)

    def stop(self) -> None:
        with self._lock:
            previous = self._mode
            self._generation += 1
            self._mode = AcquisitionMode.IDLE
            self._frame = None
            self._on_frame = None
            self._on_error = None
            reader = self._stream_reader
            thread = self._stream_thread
            self._stream_reader = None
            self._stream_thread = None

        self.poller.stop()
        if reader is not None:
            reader.stop()
        if thread is not None and thread is not threading.current_thread() and thread.is_alive():
            thread.join(timeout=self.config.stream_connect_timeout_seconds + 1.0)
        if previous is not AcquisitionMode.IDLE:
            self.logger.info("Acquisition session stopped (%s)", previous.value)

    def _begin(
        self,
        mode: AcquisitionMode,
        base: str,
        on_frame: Optional[FrameCallback],
        on_error: Optional[ErrorCallback],
    ) -> None:
        self._mode = mode
        self._base_url = base
        self._on_frame = on_frame
        self._on_error = on_error
        self.last_error = None

    def _accept_frame(self, generation: int, frame: FrameBuffer) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._frame = frame
            self.frames_received += 1
            self.last_error = None
            self._frame_ready.notify_all()
            listener = self._on_frame
            if listener is None:
                return
            try:
                listener(frame)
            except Exception:
                self.logger.exception("Frame listener failed")

    def _record_error(self, generation: int, exc: Exception) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self.last_error = str(exc)
            listener = self._on_error
            if listener is None:
                return
            try:
                listener(exc)
            except Exception:
                self.logger.exception("Error listener failed")

    def _accept_stream_bytes(self, generation: int, url: str, data: bytes) -> None:
        if not is_valid_frame(data):
            self.logger.debug("Discarded invalid stream frame from %s (%s bytes)", url, len(data))
            return
        self._accept_frame(generation, FrameBuffer(data=data, received_at=time.time(), source_url=url))

    def _stream_loop(self, generation: int, base: str, reader: MjpegStreamReader) -> None:
        last_error: Optional[StreamError] = None
        for url in stream_candidates(base):
            received_before = self.frames_received
            try:
                reader.run(url, partial(self._accept_stream_bytes, generation, url))
                return
            except StreamError as exc:
                last_error = exc
                self.logger.warning("%s", exc)
            if self.frames_received > received_before:
                break

        self._fall_back_to_polling(generation, base, last_error)

    def _fall_back_to_polling(self, generation: int, base: str, error: Optional[StreamError]) -> None:
        self.logger.info("MJPEG streaming unavailable; falling back to snapshot polling")
        with self._lock:
            if generation != self._generation:
                return
            self._generation += 1
            self._mode = AcquisitionMode.POLLING
            self._stream_reader = None
            self._stream_thread = None
            self.last_error = str(error) if error is not None else None
            self._start_poller(self._generation, base)
        self.logger.info("Acquisition session polling %s", base)
