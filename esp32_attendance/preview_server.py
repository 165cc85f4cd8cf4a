import time
from typing import Iterator, Optional

from flask import Flask, Response, jsonify

from .acquisition import AcquisitionSession

FRAME_BOUNDARY = "frame"


def _mjpeg_frame_generator(
    session: AcquisitionSession,
    idle_sleep: float = 0.03,
    max_frames: Optional[int] = None,
) -> Iterator[bytes]:
    last_sent: Optional[float] = None
    sent = 0
    while session.active or session.current_frame() is not None:
        frame = session.current_frame()
        if frame is None or frame.received_at == last_sent:
            time.sleep(idle_sleep)
            continue
        last_sent = frame.received_at
        yield (
            b"--" + FRAME_BOUNDARY.encode("ascii") + b"\r\n"
            b"Content-Type: image/jpeg\r\n\r\n" + frame.data + b"\r\n"
        )
        sent += 1
        if max_frames is not None and sent >= max_frames:
            return


def create_preview_app(session: AcquisitionSession) -> Flask:
    app = Flask(__name__)

    @app.get("/api/state")
    def state():
        frame = session.current_frame()
        return jsonify(
            {
                "mode": session.mode.value,
                "active": session.active,
                "base_url": session.base_url,
                "last_error": session.last_error,
                "frames_received": session.frames_received,
                "frame_size": frame.size if frame else None,
                "frame_age_seconds": round(frame.age_seconds(), 3) if frame else None,
                "frame_source": frame.source_url if frame else None,
            }
        )

    @app.get("/api/snapshot")
    def snapshot():
        frame = session.current_frame()
        if frame is None:
            return jsonify({"error": "No preview available."}), 503
        return Response(frame.data, mimetype="image/jpeg", headers={"Cache-Control": "no-store"})

    @app.get("/api/stream")
    def stream():
        if not session.active:
            return jsonify({"error": "Camera session is not running."}), 503
        return Response(
            _mjpeg_frame_generator(session),
            mimetype=f"multipart/x-mixed-replace; boundary={FRAME_BOUNDARY}",
        )

    return app
