from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional

import requests

from .config import ApiConfig
from .exceptions import ApiError
from .logger import setup_logger

MARK_ATTENDANCE_PATHS = (
    "/attendance/mark_attendance/",
    "/attendance/mark_with_face/",
    "/recognition/mark_attendance/",
    "/attendance/mark/",
    "/attendance/",
)
RECOGNIZE_FACE_PATH = "/recognition/recognize_face/"
TEST_CAMERA_PATH = "/settings/test_esp32/"


@dataclass
class RecognizedProfile:
    profile_id: str
    name: str
    reg_number: str = ""
    action: str = "time_in"
    time: str = ""
    confidence: float = 0.0
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_result(cls, item: dict[str, Any]) -> "RecognizedProfile":
        profile_id = item.get("profile_id", item.get("id", ""))
        confidence = item.get("confidence")
        return cls(
            profile_id=str(profile_id) if profile_id is not None else "",
            name=str(item.get("name") or "Unknown"),
            reg_number=str(item.get("reg_number") or ""),
            action=str(item.get("action") or "time_in"),
            time=str(item.get("time") or datetime.now().isoformat()),
            confidence=float(confidence) if isinstance(confidence, (int, float)) else 0.0,
            raw=dict(item),
        )

    @classmethod
    def from_legacy(cls, body: dict[str, Any]) -> "RecognizedProfile":
        profile = body.get("profile") if isinstance(body.get("profile"), dict) else {}
        name = body.get("profile_name") or body.get("name") or profile.get("name") or body.get("user_name") or "Unknown"
        reg_number = body.get("reg_number") or profile.get("reg_number") or body.get("registration_number") or ""
        profile_id = body.get("profile_id") or profile.get("id") or ""
        return cls(
            profile_id=str(profile_id),
            name=str(name),
            reg_number=str(reg_number),
            time=datetime.now().isoformat(),
            raw=dict(body),
        )


@dataclass
class AttendanceOutcome:
    endpoint: str
    profiles: List[RecognizedProfile]
    raw_response: dict[str, Any]

    @property
    def recognized(self) -> bool:
        return bool(self.profiles)


def parse_attendance_response(body: Any) -> List[RecognizedProfile]:
    if not isinstance(body, dict):
        return []
    results = body.get("results")
    if isinstance(results, list):
        return [RecognizedProfile.from_result(item) for item in results if isinstance(item, dict)]
    return [RecognizedProfile.from_legacy(body)]


def _describe_bad_request(resp) -> str:
    try:
        body = resp.json()
    except ValueError:
        return f"Bad request: {resp.text}"
    if isinstance(body, dict):
        fields = []
        for key, value in body.items():
            if isinstance(value, list) and value:
                fields.append(f"{key} ({value[0]})")
            elif isinstance(value, str):
                fields.append(f"{key} ({value})")
        if fields:
            return "Missing required fields: " + ", ".join(fields)
    return f"Bad request: {resp.text}"


class AttendanceApiClient:
    def __init__(self, cfg: Optional[ApiConfig] = None, session=None):
        self.cfg = cfg or ApiConfig()
        self.session = session if session is not None else requests.Session()
        self._session_lock = threading.Lock()
        self.logger = setup_logger(self.__class__.__name__)

    def _url(self, path: str) -> str:
        return f"{self.cfg.base_url.rstrip('/')}{path}"

    def _headers(self) -> dict[str, str]:
        if not self.cfg.token:
            raise ApiError("Authentication token is missing. Please log in again.")
        return {"Authorization": f"Bearer {self.cfg.token}"}

    def _post_json(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = self._url(path)
        try:
            with self._session_lock:
                resp = self.session.post(
                    url,
                    json=payload,
                    headers=self._headers(),
                    timeout=self.cfg.timeout_seconds,
                )
        except requests.RequestException as exc:
            raise ApiError(f"Request to {url} failed: {exc}") from exc
        if resp.status_code != 200:
            raise ApiError(f"Request to {url} failed: {resp.status_code}, {resp.text}")
        try:
            return resp.json()
        except ValueError as exc:
            raise ApiError(f"Invalid JSON from {url}") from exc

    def recognize_face(self, camera_url: str) -> dict[str, Any]:
        return self._post_json(RECOGNIZE_FACE_PATH, {"esp32_url": camera_url})

    def test_camera_connection(self, camera_url: str) -> dict[str, Any]:
        return self._post_json(TEST_CAMERA_PATH, {"esp32_url": camera_url})

    def _attendance_fields(self, camera_url: Optional[str]) -> dict[str, str]:
        fields: dict[str, str] = {}
        if camera_url:
            fields["esp32_url"] = camera_url
            fields["esp32_camera_url"] = camera_url
        fields["verification_method"] = "face"
        fields["timestamp"] = datetime.now().isoformat()
        fields["request_id"] = str(int(time.time() * 1000))
        fields["profile"] = "auto_detect"
        return fields

    def mark_attendance(self, image: bytes, camera_url: Optional[str] = None) -> AttendanceOutcome:
        if not image:
            raise ApiError("Captured frame is empty.")
        headers = self._headers()
        errors: List[str] = []

        for path in MARK_ATTENDANCE_PATHS:
            url = self._url(path)
            files = {"image": ("face_image.jpg", image, "image/jpeg")}
            try:
                with self._session_lock:
                    resp = self.session.post(
                        url,
                        data=self._attendance_fields(camera_url),
                        files=files,
                        headers=headers,
                        timeout=self.cfg.timeout_seconds,
                    )
            except requests.RequestException as exc:
                errors.append(f"Error with endpoint {url}: {exc}")
                self.logger.debug("Attendance upload to %s failed: %s", url, exc)
                continue

            if resp.status_code in (200, 201):
                try:
                    body = resp.json()
                except ValueError:
                    body = {}
                profiles = parse_attendance_response(body)
                self.logger.info("Attendance accepted by %s (%s profile(s))", url, len(profiles))
                return AttendanceOutcome(endpoint=url, profiles=profiles, raw_response=body)

            text = resp.text or ""
            if resp.status_code == 405:
                self.logger.debug("Method not allowed for %s, trying next endpoint", url)
                continue
            if resp.status_code == 400:
                if "no face" in text.lower():
                    raise ApiError("No face detected in the image. Please try again with a clearer image.")
                errors.append(_describe_bad_request(resp))
                continue
            if resp.status_code == 404 and "not recognized" in text.lower():
                raise ApiError("Face not recognized. Please register your profile first.")
            if resp.status_code == 401:
                errors.append(f"Authentication failed: {resp.status_code}, {text}")
                continue
            errors.append(f"Failed with endpoint {url}: {resp.status_code}, {text}")

        message = errors[-1] if errors else "All attendance endpoints failed."
        self.logger.warning("Attendance upload failed: %s", message)
        raise ApiError(message)
