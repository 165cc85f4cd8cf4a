from typing import List, Optional
from urllib.parse import urlsplit, urlunsplit

from .exceptions import ConfigurationError

SNAPSHOT_PATHS = ("capture", "jpg", "camera/snapshot")
VENDOR_SNAPSHOT_PATHS = ("cam-hi.jpg", "cam-lo.jpg", "cam.jpg", "snapshot.jpg")
STREAM_PATH = "stream"
ESP32_STREAM_PORT = 81


def normalize_base_url(base_url: Optional[str]) -> str:
    if base_url is None:
        raise ConfigurationError("ESP32 camera URL not configured.")
    cleaned = str(base_url).strip()
    if not cleaned:
        raise ConfigurationError("ESP32 camera URL not configured.")
    return cleaned


def join_endpoint(base_url: str, segment: str) -> str:
    if base_url.endswith("/"):
        return f"{base_url}{segment}"
    return f"{base_url}/{segment}"


def snapshot_candidates(base_url: Optional[str], include_vendor_paths: bool = True) -> List[str]:
    """Ordered snapshot URLs to try for ``base_url``.

    ``/capture`` first, then the bare URL, ``/jpg`` and ``/camera/snapshot``,
    then the vendor file names when ``include_vendor_paths`` is set. A path
    already present in the base URL is not appended again.
    """
    base = normalize_base_url(base_url)
    lowered = base.lower()

    candidates: List[str] = []
    first, *rest = SNAPSHOT_PATHS
    if first not in lowered:
        candidates.append(join_endpoint(base, first))
    candidates.append(base)
    for segment in rest:
        if segment not in lowered:
            candidates.append(join_endpoint(base, segment))

    if include_vendor_paths:
        for segment in VENDOR_SNAPSHOT_PATHS:
            if segment not in lowered:
                candidates.append(join_endpoint(base, segment))
    return candidates


def stream_candidates(base_url: Optional[str]) -> List[str]:
    base = normalize_base_url(base_url)
    if STREAM_PATH in base.lower():
        return [base]

    candidates = [join_endpoint(base, STREAM_PATH)]
    parts = urlsplit(base)
    if parts.hostname and parts.port is None:
        host = f"[{parts.hostname}]" if ":" in parts.hostname else parts.hostname
        netloc = f"{host}:{ESP32_STREAM_PORT}"
        if parts.username:
            credentials = parts.username if parts.password is None else f"{parts.username}:{parts.password}"
            netloc = f"{credentials}@{netloc}"
        alternate = urlunsplit((parts.scheme, netloc, parts.path, "", ""))
        candidates.append(join_endpoint(alternate, STREAM_PATH))
    return candidates
