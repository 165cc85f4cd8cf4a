import threading
import time

import pytest

from conftest import make_jpeg
from esp32_attendance.config import CameraConfig
from esp32_attendance.exceptions import ConfigurationError, FetchError
from esp32_attendance.preview_poller import PreviewPoller
from esp32_attendance.snapshot_fetcher import FrameBuffer


class ScriptedFetcher:
    """Returns frames or raises per a script; tracks concurrency."""

    def __init__(self, outcomes=None, delay=0.0, interval=0.02):
        self.config = CameraConfig(base_url="http://cam", snapshot_timeout_seconds=1.0, poll_interval_seconds=interval)
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.release = None
        self.started = threading.Event()
        self._lock = threading.Lock()

    def fetch_once(self, base_url=None):
        with self._lock:
            self.calls += 1
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            index = self.calls - 1
        self.started.set()
        try:
            if self.release is not None:
                self.release.wait(2.0)
            if self.delay:
                time.sleep(self.delay)
            outcome = self.outcomes[index] if index < len(self.outcomes) else "frame"
            if outcome == "fail":
                raise FetchError("All camera endpoints failed.")
            return FrameBuffer(data=make_jpeg(seed=index), source_url=f"{base_url}/capture")
        finally:
            with self._lock:
                self.in_flight -= 1


def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def test_first_fetch_happens_immediately():
    fetcher = ScriptedFetcher(interval=5.0)
    poller = PreviewPoller(fetcher)
    frames = []

    poller.start("http://cam", on_frame=frames.append)
    try:
        assert wait_until(lambda: len(frames) == 1, timeout=1.0)
    finally:
        poller.stop()


def test_errors_do_not_stop_polling_and_recovery_delivers_frames():
    fetcher = ScriptedFetcher(outcomes=["fail", "fail", "frame"])
    poller = PreviewPoller(fetcher)
    frames, errors = [], []

    poller.start("http://cam", on_frame=frames.append, on_error=errors.append)
    try:
        assert wait_until(lambda: len(frames) >= 1)
        assert poller.active
    finally:
        poller.stop()

    assert len(errors) == 2
    assert all(isinstance(err, FetchError) for err in errors)
    assert poller.error_count == 2
    assert poller.last_error is None


def test_fetches_never_overlap_when_slower_than_interval():
    fetcher = ScriptedFetcher(delay=0.06, interval=0.01)
    poller = PreviewPoller(fetcher)
    frames = []

    poller.start("http://cam", on_frame=frames.append)
    try:
        assert wait_until(lambda: len(frames) >= 4)
    finally:
        poller.stop()

    assert fetcher.max_in_flight == 1
    # The only fetch allowed to go undelivered is the one discarded by stop().
    assert fetcher.calls - len(frames) in (0, 1)


def test_no_callbacks_after_stop_with_fetch_in_flight():
    fetcher = ScriptedFetcher(interval=0.01)
    fetcher.release = threading.Event()
    poller = PreviewPoller(fetcher)
    frames, errors = [], []

    poller.start("http://cam", on_frame=frames.append, on_error=errors.append)
    assert fetcher.started.wait(1.0)

    stopper = threading.Thread(target=poller.stop)
    stopper.start()
    time.sleep(0.05)
    fetcher.release.set()
    stopper.join(2.0)

    time.sleep(0.1)
    assert frames == []
    assert errors == []
    assert not poller.active


def test_start_while_active_is_a_noop():
    fetcher = ScriptedFetcher(interval=0.05)
    poller = PreviewPoller(fetcher)
    first, second = [], []

    poller.start("http://cam", on_frame=first.append)
    try:
        worker = poller._worker
        poller.start("http://other", on_frame=second.append)
        assert poller._worker is worker
        assert wait_until(lambda: len(first) >= 2)
    finally:
        poller.stop()
    assert second == []


def test_stop_is_idempotent_and_restart_works():
    fetcher = ScriptedFetcher(interval=0.02)
    poller = PreviewPoller(fetcher)
    frames = []

    poller.stop()
    poller.start("http://cam", on_frame=frames.append)
    assert wait_until(lambda: len(frames) >= 1)
    poller.stop()
    poller.stop()
    count = len(frames)
    time.sleep(0.1)
    assert len(frames) == count

    poller.start("http://cam", on_frame=frames.append)
    try:
        assert wait_until(lambda: len(frames) > count)
    finally:
        poller.stop()


def test_stop_from_inside_callback():
    fetcher = ScriptedFetcher(interval=0.01)
    poller = PreviewPoller(fetcher)
    frames = []

    def on_frame(frame):
        frames.append(frame)
        poller.stop()

    poller.start("http://cam", on_frame=on_frame)
    assert wait_until(lambda: not poller.active)
    time.sleep(0.1)
    assert len(frames) == 1


def test_missing_url_is_fatal():
    poller = PreviewPoller(ScriptedFetcher())
    with pytest.raises(ConfigurationError):
        poller.start("  ", on_frame=lambda frame: None)
    assert not poller.active


def test_restart_does_not_wait_for_stuck_fetch():
    fetcher = ScriptedFetcher(interval=0.01)
    fetcher.config = CameraConfig(base_url="http://cam", snapshot_timeout_seconds=0.05, poll_interval_seconds=0.01)
    fetcher.release = threading.Event()
    poller = PreviewPoller(fetcher)
    frames = []

    poller.start("http://cam", on_frame=frames.append)
    assert fetcher.started.wait(1.0)
    poller.stop()

    began = time.monotonic()
    poller.start("http://cam", on_frame=frames.append)
    assert time.monotonic() - began < 0.5
    try:
        time.sleep(0.05)
        assert fetcher.calls == 1
        fetcher.release.set()
        assert wait_until(lambda: len(frames) >= 2)
    finally:
        poller.stop()

    assert fetcher.max_in_flight == 1
    assert make_jpeg(seed=0) not in [frame.data for frame in frames]
