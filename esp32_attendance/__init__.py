from .acquisition import AcquisitionMode, AcquisitionSession
from .config import ApiConfig, CameraConfig
from .endpoint_prober import snapshot_candidates, stream_candidates
from .exceptions import ApiError, AttendanceError, ConfigurationError, FetchError, StreamError
from .frame_validator import is_valid_frame
from .mjpeg_stream import MjpegStreamReader, StreamingFrameAssembler
from .preview_poller import PreviewPoller
from .snapshot_fetcher import FrameBuffer, SnapshotFetcher

__all__ = [
    "AcquisitionMode",
    "AcquisitionSession",
    "ApiConfig",
    "ApiError",
    "AttendanceError",
    "CameraConfig",
    "ConfigurationError",
    "FetchError",
    "FrameBuffer",
    "MjpegStreamReader",
    "PreviewPoller",
    "SnapshotFetcher",
    "StreamError",
    "StreamingFrameAssembler",
    "is_valid_frame",
    "snapshot_candidates",
    "stream_candidates",
]
