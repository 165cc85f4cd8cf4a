import pytest
import requests

from conftest import FakeResponse, FakeSession, make_jpeg
from esp32_attendance.config import CameraConfig
from esp32_attendance.exceptions import StreamError
from esp32_attendance.mjpeg_stream import (
    MjpegStreamReader,
    StreamingFrameAssembler,
    boundary_from_content_type,
)


def part(jpeg: bytes, boundary: bytes = b"frame") -> bytes:
    header = b"--" + boundary + b"\r\nContent-Type: image/jpeg\r\nContent-Length: " + str(len(jpeg)).encode() + b"\r\n\r\n"
    return header + jpeg + b"\r\n"


@pytest.mark.parametrize("boundary", ["frame", None])
def test_two_frames_in_one_chunk(boundary):
    first, second = make_jpeg(3000, seed=1), make_jpeg(2500, seed=2)
    assembler = StreamingFrameAssembler(boundary=boundary)

    frames = assembler.feed(part(first) + part(second) + b"--frame\r\n")

    assert frames == [first, second]
    assert assembler.frames_emitted == 2


def test_frames_split_across_small_chunks():
    payloads = [make_jpeg(1800, seed=i) for i in range(3)]
    stream = b"".join(part(p) for p in payloads) + b"--frame\r\n"
    assembler = StreamingFrameAssembler(boundary="frame")

    frames = []
    for offset in range(0, len(stream), 7):
        frames.extend(assembler.feed(stream[offset:offset + 7]))

    assert frames == payloads


def test_sink_receives_emitted_frames():
    received = []
    jpeg = make_jpeg(1200)
    assembler = StreamingFrameAssembler(boundary="frame", on_frame=received.append)

    assembler.feed(part(jpeg) + b"--frame\r\n")

    assert received == [jpeg]


def test_raw_jpeg_concatenation_splits_on_start_markers():
    payloads = [make_jpeg(1500, seed=i) for i in range(3)]
    assembler = StreamingFrameAssembler()

    frames = assembler.feed(b"".join(payloads))

    # The last frame has no following marker yet.
    assert frames == payloads[:2]


def test_end_marker_followed_by_dashes_closes_frame():
    jpeg = make_jpeg(1500)
    assembler = StreamingFrameAssembler()

    frames = assembler.feed(b"Content-Type: image/jpeg\r\n\r\n" + jpeg + b"--fra")

    assert frames == [jpeg]
    assert assembler.in_header is True


def test_tiny_parts_are_not_emitted():
    jpeg = make_jpeg(1500)
    assembler = StreamingFrameAssembler(boundary="frame")

    frames = assembler.feed(part(b"\xff\xd8\xff" + b"a" * 10) + part(jpeg) + b"--frame\r\n")

    assert frames == [jpeg]


def test_header_seeking_buffer_stays_bounded():
    assembler = StreamingFrameAssembler(boundary="frame")
    for _ in range(200):
        assembler.feed(b"\x00" * 1000)
        assert assembler.buffered <= 8 * 1024
        assert assembler.in_header
    assert assembler.frames_emitted == 0
    assert assembler.bytes_discarded > 0


def test_body_seeking_buffer_stays_bounded():
    assembler = StreamingFrameAssembler(boundary="frame")
    assembler.feed(b"--frame\r\nContent-Type: image/jpeg\r\n\r\n\xff\xd8\xff")
    assert not assembler.in_header

    for _ in range(150):
        assembler.feed(b"\x00" * 4096)
        assert assembler.buffered <= 200 * 1024
    assert assembler.frames_emitted == 0


def test_recovers_after_corrupted_body():
    assembler = StreamingFrameAssembler(boundary="frame")
    assembler.feed(b"--frame\r\nContent-Type: image/jpeg\r\n\r\n\xff\xd8\xff")
    for _ in range(60):
        assembler.feed(b"\x00" * 4096)

    jpeg = make_jpeg(2000)
    frames = assembler.feed(b"\r\n" + part(jpeg) + b"--frame\r\n")

    assert frames[-1] == jpeg


@pytest.mark.parametrize(
    "header,expected",
    [
        ("multipart/x-mixed-replace; boundary=frame", "frame"),
        ('multipart/x-mixed-replace;boundary="123456789000000000000987654321"', "123456789000000000000987654321"),
        ("multipart/x-mixed-replace; boundary=--myboundary", "myboundary"),
        ("image/jpeg", None),
        (None, None),
    ],
)
def test_boundary_from_content_type(header, expected):
    assert boundary_from_content_type(header) == expected


STREAM_URL = "http://192.168.1.50:81/stream"


def stream_config():
    return CameraConfig(base_url="http://192.168.1.50", stream_chunk_size=64)


def test_reader_delivers_frames_then_reports_end_of_stream():
    payloads = [make_jpeg(900, seed=i) for i in range(2)]
    body = b"".join(part(p) for p in payloads) + b"--frame\r\n"
    response = FakeResponse(
        200,
        headers={"Content-Type": "multipart/x-mixed-replace; boundary=frame"},
        chunks=[body[i:i + 64] for i in range(0, len(body), 64)],
    )
    reader = MjpegStreamReader(stream_config(), session=FakeSession({STREAM_URL: response}))
    frames = []

    with pytest.raises(StreamError, match="ended"):
        reader.run(STREAM_URL, frames.append)

    assert frames == payloads
    assert response.closed


def test_reader_wraps_transport_errors():
    response = FakeResponse(
        200,
        headers={"Content-Type": "multipart/x-mixed-replace; boundary=frame"},
        chunks=[b"--frame\r\n", requests.ConnectionError("reset by peer")],
    )
    reader = MjpegStreamReader(stream_config(), session=FakeSession({STREAM_URL: response}))

    with pytest.raises(StreamError, match="reset by peer"):
        reader.run(STREAM_URL, lambda frame: None)


def test_reader_rejects_non_200_and_unreachable_streams():
    reader = MjpegStreamReader(stream_config(), session=FakeSession({STREAM_URL: FakeResponse(404, b"missing")}))
    with pytest.raises(StreamError, match="404"):
        reader.run(STREAM_URL, lambda frame: None)

    with pytest.raises(StreamError, match="Unable to open"):
        reader.run("http://192.168.1.50/stream", lambda frame: None)


def test_reader_returns_quietly_when_stopped():
    response = FakeResponse(200, headers={"Content-Type": "multipart/x-mixed-replace; boundary=frame"}, chunks=[b"x"])
    reader = MjpegStreamReader(stream_config(), session=FakeSession({STREAM_URL: response}))
    reader.stop()

    reader.run(STREAM_URL, lambda frame: None)

    assert response.closed
