"""Byte-signature checks for frames returned by the camera.

The camera's Content-Type header is not trusted; a frame is judged by its
leading bytes only.
"""

from .config import MIN_FRAME_BYTES

JPEG_SOI = b"\xff\xd8\xff"
JPEG_EOI = b"\xff\xd9"

SNIFF_BYTES = 15
MARKUP_PREFIXES = ("<!doctype", "<html", "<?xml")


def _printable_prefix(data: bytes) -> str:
    head = data[:SNIFF_BYTES]
    return "".join(chr(c) for c in head if 32 <= c < 127).lower()


def looks_like_markup(data: bytes) -> bool:
    if len(data) <= SNIFF_BYTES:
        return False
    prefix = _printable_prefix(data)
    return any(marker in prefix for marker in MARKUP_PREFIXES)


def is_valid_frame(data) -> bool:
    """Return True when ``data`` is plausibly a JPEG frame.

    Accepts anything starting with the JPEG start-of-image marker, rejects
    HTML/XML error pages, and otherwise falls back to a minimum size.
    Never raises.
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        return False
    data = bytes(data)
    if not data:
        return False

    if data.startswith(JPEG_SOI):
        return True
    if looks_like_markup(data):
        return False
    return len(data) > MIN_FRAME_BYTES
