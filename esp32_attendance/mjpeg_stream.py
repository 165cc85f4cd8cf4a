"""Best-effort MJPEG (multipart/x-mixed-replace) frame assembly.

Most ESP32-CAM firmware does not hold a stream open reliably, so this path
is optional: the acquisition session falls back to snapshot polling as soon
as a stream ends or fails.
"""

from __future__ import annotations

import re
import threading
from typing import Callable, List, Optional

import requests

from .config import (
    MIN_STREAM_FRAME_BYTES,
    STREAM_BODY_LIMIT,
    STREAM_BOUNDARY_LOOKAHEAD,
    STREAM_HEADER_LIMIT,
    STREAM_HEADER_WINDOW,
    STREAM_TRIM_KEEP,
    CameraConfig,
)
from .exceptions import StreamError
from .frame_validator import JPEG_EOI, JPEG_SOI
from .logger import setup_logger

BLANK_LINES = (b"\r\n\r\n", b"\n\n")
CONTENT_TYPE_JPEG = re.compile(rb"content-type:\s*image/jpe?g", re.IGNORECASE)
ANY_BOUNDARY_LINE = re.compile(rb"\r?\n(--[\x21-\x7e]{1,70})\r?\n")
BOUNDARY_PARAM = re.compile(r'boundary="?([^";]+)"?', re.IGNORECASE)
# Rescan this many bytes of already-searched body so markers split across chunks are found.
RESCAN_OVERLAP = 256


def boundary_from_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    match = BOUNDARY_PARAM.search(content_type)
    if match is None:
        return None
    token = match.group(1).strip()
    if token.startswith("--"):
        token = token[2:]
    return token or None


class StreamingFrameAssembler:
    def __init__(self, boundary: Optional[str] = None, on_frame: Optional[Callable[[bytes], None]] = None):
        self.boundary = boundary
        self.on_frame = on_frame
        self.buffer = bytearray()
        self.in_header = True
        self.frames_emitted = 0
        self.bytes_discarded = 0
        self._scanned = 0
        self._token_pattern = (
            re.compile(rb"(?:\r?\n)?--" + re.escape(boundary.encode("latin-1"))) if boundary else None
        )

    @property
    def buffered(self) -> int:
        return len(self.buffer)

    def reset(self) -> None:
        self.buffer.clear()
        self.in_header = True
        self._scanned = 0

    def feed(self, chunk: bytes) -> List[bytes]:
        frames: List[bytes] = []
        if not chunk:
            return frames
        self.buffer.extend(chunk)

        progressed = True
        while progressed:
            if self.in_header:
                progressed = self._consume_header()
            else:
                frame, progressed = self._consume_body()
                if frame is not None:
                    frames.append(frame)
        return frames

    def _trim(self) -> None:
        dropped = len(self.buffer) - STREAM_TRIM_KEEP
        if dropped > 0:
            del self.buffer[:dropped]
            self.bytes_discarded += dropped
        self._scanned = 0

    def _consume_header(self) -> bool:
        window = bytes(self.buffer[:STREAM_HEADER_WINDOW])
        body_start: Optional[int] = None
        blank_at: Optional[int] = None
        for separator in BLANK_LINES:
            idx = window.find(separator)
            if idx >= 0 and (blank_at is None or idx < blank_at):
                blank_at = idx
                body_start = idx + len(separator)

        soi_at = self.buffer.find(JPEG_SOI)
        if soi_at >= 0 and (blank_at is None or soi_at < blank_at):
            body_start = soi_at

        if body_start is None:
            if len(self.buffer) > STREAM_HEADER_LIMIT:
                self._trim()
            return False

        del self.buffer[:body_start]
        self.in_header = False
        self._scanned = 0
        return True

    def _find_boundary(self) -> Optional[int]:
        start = max(0, self._scanned - RESCAN_OVERLAP)
        data = bytes(self.buffer)

        textual: List[int] = []
        if self._token_pattern is not None:
            match = self._token_pattern.search(data, start)
            if match is not None:
                textual.append(match.start())
        else:
            match = ANY_BOUNDARY_LINE.search(data, start)
            if match is not None:
                textual.append(match.start())
        match = CONTENT_TYPE_JPEG.search(data, start)
        if match is not None:
            textual.append(match.start())
        textual = [pos for pos in textual if pos > 0]
        if textual:
            return min(textual)

        soi_at = data.find(JPEG_SOI, max(1, start))
        if soi_at > 0:
            return soi_at

        eoi_at = data.find(JPEG_EOI, start)
        while eoi_at >= 0:
            tail = eoi_at + len(JPEG_EOI)
            dash_at = data.find(b"--", tail, tail + STREAM_BOUNDARY_LOOKAHEAD)
            if dash_at >= 0:
                return dash_at
            eoi_at = data.find(JPEG_EOI, tail)
        return None

    def _consume_body(self) -> tuple[Optional[bytes], bool]:
        boundary_at = self._find_boundary()
        if boundary_at is None:
            if len(self.buffer) > STREAM_BODY_LIMIT:
                self._trim()
                self.in_header = True
                return None, False
            self._scanned = len(self.buffer)
            return None, False

        frame = bytes(self.buffer[:boundary_at]).rstrip(b"\r\n")
        del self.buffer[:boundary_at]
        self.in_header = True
        self._scanned = 0

        if len(frame) <= MIN_STREAM_FRAME_BYTES:
            return None, True
        self.frames_emitted += 1
        if self.on_frame is not None:
            self.on_frame(frame)
        return frame, True


class MjpegStreamReader:
    def __init__(self, config: Optional[CameraConfig] = None, session=None):
        self.config = config or CameraConfig()
        self.session = session if session is not None else requests.Session()
        self._stop_event = threading.Event()
        self._response = None
        self.logger = setup_logger(self.__class__.__name__)

    def stop(self) -> None:
        self._stop_event.set()
        response = self._response
        if response is not None:
            response.close()

    def run(self, url: str, on_frame: Callable[[bytes], None]) -> None:
        """Read frames from ``url`` until the stream ends, fails or ``stop()`` is called.

        Raises StreamError on end-of-stream or transport failure; a requested
        stop returns normally.
        """
        timeout = (self.config.stream_connect_timeout_seconds, self.config.stream_read_timeout_seconds)
        try:
            response = self.session.get(url, stream=True, timeout=timeout)
        except requests.RequestException as exc:
            raise StreamError(f"Unable to open MJPEG stream {url}: {exc}") from exc

        self._response = response
        if self._stop_event.is_set():
            self._response = None
            response.close()
            return
        try:
            if response.status_code != 200:
                raise StreamError(f"MJPEG stream {url} returned status {response.status_code}")

            boundary = boundary_from_content_type(response.headers.get("Content-Type"))
            assembler = StreamingFrameAssembler(boundary=boundary, on_frame=on_frame)
            self.logger.info("MJPEG stream opened at %s (boundary=%s)", url, boundary or "unknown")

            for chunk in response.iter_content(chunk_size=self.config.stream_chunk_size):
                if self._stop_event.is_set():
                    return
                assembler.feed(chunk)
        except (requests.RequestException, OSError) as exc:
            if self._stop_event.is_set():
                return
            raise StreamError(f"MJPEG stream {url} failed: {exc}") from exc
        finally:
            self._response = None
            response.close()

        if self._stop_event.is_set():
            return
        raise StreamError(f"MJPEG stream {url} ended")
