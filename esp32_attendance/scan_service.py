from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .api_client import AttendanceApiClient, RecognizedProfile
from .config import SCAN_INTERVAL_SECONDS, SCAN_REQUIRE_FACE
from .exceptions import AttendanceError, ConfigurationError
from .face_detection import FaceDetector
from .logger import setup_logger
from .snapshot_fetcher import FrameBuffer, SnapshotFetcher


@dataclass
class ScanResult:
    status: str
    frame: Optional[FrameBuffer] = None
    profiles: List[RecognizedProfile] = field(default_factory=list)
    uploaded: bool = False


class AttendanceScanner:
    def __init__(
        self,
        fetcher: SnapshotFetcher,
        api: AttendanceApiClient,
        base_url: Optional[str] = None,
        face_detector: Optional[FaceDetector] = None,
        require_face: bool = SCAN_REQUIRE_FACE,
        interval_seconds: float = SCAN_INTERVAL_SECONDS,
    ):
        self.fetcher = fetcher
        self.api = api
        self.base_url = base_url if base_url is not None else fetcher.config.base_url
        self.face_detector = face_detector
        self.require_face = require_face and face_detector is not None
        self.interval_seconds = max(0.0, float(interval_seconds))
        self.logger = setup_logger(self.__class__.__name__)

        self.recognized: Dict[str, RecognizedProfile] = {}
        self.status_message = "Ready to scan"
        self.scan_count = 0
        self.last_scan_at: Optional[float] = None

        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def scanning(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def scan_once(self) -> ScanResult:
        return self._scan(None)

    def _scan(self, stop_event: Optional[threading.Event]) -> ScanResult:
        """Fetch, gate, upload and merge one frame.

        With a ``stop_event`` the scan belongs to a background loop: once the
        event is set nothing is uploaded and results are not merged.
        """

        def cancelled() -> bool:
            return stop_event is not None and stop_event.is_set()

        with self._lock:
            if cancelled():
                return ScanResult(status="Scan cancelled")
            self.scan_count += 1
            self.last_scan_at = time.time()

        frame = self.fetcher.fetch_once(self.base_url)
        if cancelled():
            return ScanResult(status="Scan cancelled", frame=frame)

        if self.require_face and not self.face_detector.has_usable_face(frame.data):
            result = ScanResult(status="No usable face in frame", frame=frame)
            self._set_status(result.status, stop_event)
            return result

        if cancelled():
            return ScanResult(status="Scan cancelled", frame=frame)
        outcome = self.api.mark_attendance(frame.data, camera_url=self.base_url)

        if outcome.profiles:
            status = f"{len(outcome.profiles)} profile(s) recognized"
        else:
            status = "No profiles recognized"

        with self._lock:
            if cancelled():
                self.logger.info("Dropping results of a scan finished after stop")
                return ScanResult(status="Scan cancelled", frame=frame, uploaded=True)
            for profile in outcome.profiles:
                key = profile.profile_id or profile.name
                self.recognized[key] = profile
            self.status_message = status
        return ScanResult(status=status, frame=frame, profiles=list(outcome.profiles), uploaded=True)

    def recognized_profiles(self) -> List[RecognizedProfile]:
        with self._lock:
            return list(self.recognized.values())

    def _set_status(self, message: str, stop_event: Optional[threading.Event] = None) -> None:
        with self._lock:
            if stop_event is not None and stop_event.is_set():
                return
            self.status_message = message

    def start(self) -> None:
        if self.scanning:
            return
        if not self.base_url or not str(self.base_url).strip():
            raise ConfigurationError("ESP32 camera URL not configured.")

        stop_event = threading.Event()
        with self._lock:
            self._stop_event.set()
            self._stop_event = stop_event
            self.recognized.clear()
            self.scan_count = 0
            self.status_message = "Scanning..."
        self._thread = threading.Thread(
            target=self._run_loop,
            args=(stop_event,),
            name="attendance-scanner",
            daemon=True,
        )
        self._thread.start()
        self.logger.info("Attendance scanning started every %.1fs", self.interval_seconds)

    def stop(self) -> None:
        with self._lock:
            self._stop_event.set()
            self.status_message = "Scan stopped"
        thread = self._thread
        if thread is not None and thread is not threading.current_thread() and thread.is_alive():
            thread.join(timeout=2.0)
        self._thread = None

    def _run_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval_seconds):
            try:
                result = self._scan(stop_event)
                self.logger.info("Scan %s: %s", self.scan_count, result.status)
            except ConfigurationError as exc:
                self.logger.error("Scanning stopped: %s", exc)
                self._set_status(str(exc), stop_event)
                stop_event.set()
                return
            except AttendanceError as exc:
                self.logger.warning("Scan failed: %s", exc)
                self._set_status(f"Error: {exc}", stop_event)
            except Exception as exc:
                self.logger.exception("Unexpected scan failure")
                self._set_status(f"Error: {exc}", stop_event)
