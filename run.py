import argparse
import sys
import time
from pathlib import Path

from esp32_attendance.acquisition import AcquisitionSession
from esp32_attendance.api_client import AttendanceApiClient
from esp32_attendance.config import (
    API_BASE_URL,
    API_TOKEN,
    CAMERA_URL,
    CAPTURE_DIR,
    POLL_INTERVAL_SECONDS,
    PROBE_VENDOR_PATHS,
    SCAN_INTERVAL_SECONDS,
    SNAPSHOT_TIMEOUT_SECONDS,
    ApiConfig,
    CameraConfig,
)
from esp32_attendance.endpoint_prober import snapshot_candidates, stream_candidates
from esp32_attendance.exceptions import AttendanceError
from esp32_attendance.logger import setup_logger
from esp32_attendance.scan_service import AttendanceScanner
from esp32_attendance.snapshot_fetcher import SnapshotFetcher, capture_to_file


def _add_camera_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--url", default=CAMERA_URL, help="ESP32 camera base URL (env ESP32_CAMERA_URL)")
    parser.add_argument(
        "--timeout",
        type=float,
        default=SNAPSHOT_TIMEOUT_SECONDS,
        help="Per-endpoint snapshot timeout in seconds",
    )
    parser.add_argument(
        "--no-vendor-paths",
        action="store_true",
        default=not PROBE_VENDOR_PATHS,
        help="Skip cam-hi.jpg / cam-lo.jpg / cam.jpg / snapshot.jpg candidates",
    )


def _add_api_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--api", default=API_BASE_URL, help="Attendance backend base URL")
    parser.add_argument("--token", default=API_TOKEN, help="Bearer token (env ATTENDANCE_API_TOKEN)")


def _camera_config(args: argparse.Namespace) -> CameraConfig:
    return CameraConfig(
        base_url=args.url,
        snapshot_timeout_seconds=args.timeout,
        poll_interval_seconds=getattr(args, "interval_ms", POLL_INTERVAL_SECONDS * 1000) / 1000.0,
        include_vendor_paths=not args.no_vendor_paths,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="ESP32 camera acquisition and face attendance client"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    probe = subparsers.add_parser("probe", help="Print snapshot and stream endpoints tried for a camera URL")
    _add_camera_args(probe)

    capture = subparsers.add_parser("capture", help="Fetch one validated frame and save it as JPEG")
    _add_camera_args(capture)
    capture.add_argument("--output", type=Path, default=CAPTURE_DIR, help="Directory for captured frames")

    preview = subparsers.add_parser("preview", help="Run a preview session and report frames as they arrive")
    _add_camera_args(preview)
    preview.add_argument(
        "--interval-ms",
        type=int,
        default=int(POLL_INTERVAL_SECONDS * 1000),
        help="Polling interval in milliseconds",
    )
    preview.add_argument("--seconds", type=float, default=10.0, help="How long to run the session")
    preview.add_argument("--stream", action="store_true", help="Try MJPEG streaming before polling")

    scan = subparsers.add_parser("scan", help="Capture frames and mark attendance through the backend")
    _add_camera_args(scan)
    _add_api_args(scan)
    scan.add_argument("--continuous", action="store_true", help="Keep scanning until interrupted")
    scan.add_argument(
        "--interval",
        type=float,
        default=SCAN_INTERVAL_SECONDS,
        help="Seconds between scans in continuous mode",
    )
    scan.add_argument("--require-face", action="store_true", help="Upload only frames with a usable face")

    serve = subparsers.add_parser("serve", help="Poll the camera and relay the preview over HTTP")
    _add_camera_args(serve)
    serve.add_argument(
        "--interval-ms",
        type=int,
        default=int(POLL_INTERVAL_SECONDS * 1000),
        help="Polling interval in milliseconds",
    )
    serve.add_argument("--host", default="0.0.0.0", help="Host interface")
    serve.add_argument("--port", type=int, default=8090, help="Port")
    serve.add_argument("--stream", action="store_true", help="Try MJPEG streaming before polling")

    return parser


def _print_recognized(scanner: AttendanceScanner) -> None:
    profiles = scanner.recognized_profiles()
    if not profiles:
        return
    print(f"{'Profile':<12} {'Name':<24} {'Action':<10} {'Confidence'}")
    print("-" * 60)
    for profile in profiles:
        print(f"{profile.profile_id:<12} {profile.name:<24} {profile.action:<10} {profile.confidence:.2f}")


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = setup_logger("main")

    try:
        if args.command == "probe":
            config = _camera_config(args)
            print("Snapshot endpoints:")
            for rank, url in enumerate(snapshot_candidates(config.base_url, config.include_vendor_paths), start=1):
                print(f"  {rank}. {url}")
            print("Stream endpoints:")
            for rank, url in enumerate(stream_candidates(config.base_url), start=1):
                print(f"  {rank}. {url}")
            return 0

        if args.command == "capture":
            fetcher = SnapshotFetcher(_camera_config(args))
            try:
                path = capture_to_file(fetcher, directory=args.output)
            finally:
                fetcher.close()
            print(f"Captured frame saved to {path}")
            return 0

        if args.command == "preview":
            config = _camera_config(args)
            with AcquisitionSession(config) as session:
                if args.stream:
                    session.start_streaming(
                        on_frame=lambda f: print(f"[frame] {f.size} bytes from {f.source_url}"),
                        on_error=lambda e: print(f"[error] {e}"),
                    )
                else:
                    session.start_polling(
                        on_frame=lambda f: print(f"[frame] {f.size} bytes from {f.source_url}"),
                        on_error=lambda e: print(f"[error] {e}"),
                    )
                time.sleep(max(0.0, args.seconds))
                print(
                    f"Preview finished: mode={session.mode.value}, frames={session.frames_received}, "
                    f"last_error={session.last_error or '-'}"
                )
            return 0

        if args.command == "scan":
            fetcher = SnapshotFetcher(_camera_config(args))
            api = AttendanceApiClient(ApiConfig(base_url=args.api, token=args.token))
            detector = None
            if args.require_face:
                from esp32_attendance.face_detection import HaarFaceDetector

                detector = HaarFaceDetector()
            scanner = AttendanceScanner(
                fetcher=fetcher,
                api=api,
                face_detector=detector,
                require_face=args.require_face,
                interval_seconds=args.interval,
            )
            if not args.continuous:
                result = scanner.scan_once()
                print(result.status)
                _print_recognized(scanner)
                return 0

            scanner.start()
            try:
                while scanner.scanning:
                    time.sleep(0.5)
            finally:
                scanner.stop()
                print(f"Scans: {scanner.scan_count}. Last status: {scanner.status_message}")
                _print_recognized(scanner)
            return 0

        if args.command == "serve":
            from esp32_attendance.preview_server import create_preview_app

            session = AcquisitionSession(_camera_config(args))
            if args.stream:
                session.start_streaming()
            else:
                session.start_polling()
            app = create_preview_app(session)
            try:
                app.run(host=args.host, port=args.port, threaded=True)
            finally:
                session.stop()
            return 0

    except AttendanceError as exc:
        logger.error("Application error: %s", exc)
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user.")
        return 1
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"Unexpected error: {exc}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
