from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import requests

from .config import CAPTURE_DIR, MIN_RESPONSE_BYTES, CameraConfig
from .endpoint_prober import snapshot_candidates
from .exceptions import FetchError
from .frame_validator import is_valid_frame
from .logger import setup_logger


@dataclass(frozen=True)
class FrameBuffer:
    data: bytes
    received_at: float = field(default_factory=time.time)
    source_url: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)

    def age_seconds(self, now: Optional[float] = None) -> float:
        current = time.time() if now is None else now
        return max(0.0, current - self.received_at)


class SnapshotFetcher:
    def __init__(self, config: Optional[CameraConfig] = None, session=None):
        self.config = config or CameraConfig()
        self.session = session if session is not None else requests.Session()
        self._owns_session = session is None
        self._session_lock = threading.Lock()
        self.logger = setup_logger(self.__class__.__name__)

    def close(self) -> None:
        if self._owns_session:
            self.session.close()

    def candidates(self, base_url: Optional[str] = None) -> List[str]:
        url = self.config.base_url if base_url is None else base_url
        return snapshot_candidates(url, include_vendor_paths=self.config.include_vendor_paths)

    def fetch_once(self, base_url: Optional[str] = None) -> FrameBuffer:
        endpoints = self.candidates(base_url)
        attempts: List[str] = []
        last_error: object = None

        for url in endpoints:
            try:
                with self._session_lock:
                    resp = self.session.get(url, timeout=self.config.snapshot_timeout_seconds)
            except requests.Timeout as exc:
                last_error = exc
                attempts.append(f"{url}: timeout")
                self.logger.debug("Snapshot timeout on %s", url)
                continue
            except requests.RequestException as exc:
                last_error = exc
                attempts.append(f"{url}: {exc}")
                self.logger.debug("Snapshot request failed on %s: %s", url, exc)
                continue

            body = resp.content or b""
            if resp.status_code != 200 or len(body) <= MIN_RESPONSE_BYTES:
                last_error = f"Invalid response from {url}: status={resp.status_code}, size={len(body)}"
                attempts.append(last_error)
                self.logger.debug(last_error)
                continue

            if not is_valid_frame(body):
                last_error = f"Invalid image data from {url} ({len(body)} bytes)"
                attempts.append(last_error)
                self.logger.debug(last_error)
                continue

            self.logger.debug("Snapshot received from %s (%s bytes)", url, len(body))
            return FrameBuffer(data=bytes(body), received_at=time.time(), source_url=url)

        message = str(last_error) if last_error is not None else "Failed to capture image from any endpoint."
        error = FetchError(
            f"All camera endpoints failed. Last error: {message}",
            last_error=last_error,
            attempts=attempts,
        )
        if isinstance(last_error, BaseException):
            raise error from last_error
        raise error


def capture_to_file(
    fetcher: SnapshotFetcher,
    base_url: Optional[str] = None,
    directory: Path = CAPTURE_DIR,
) -> Path:
    frame = fetcher.fetch_once(base_url)
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"esp32_captured_{int(frame.received_at * 1000)}.jpg"
    path.write_bytes(frame.data)
    fetcher.logger.info("Frame saved to %s (%s bytes)", path, frame.size)
    return path
