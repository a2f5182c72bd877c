"""Device session context and topic derivation."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from . import constants

LOGGER = logging.getLogger(__name__)


class SessionError(RuntimeError):
    """Raised when the stored session cannot be loaded."""


@dataclass(frozen=True, slots=True)
class DeviceChannels:
    """Topic pair addressing a single machine."""

    device_id: str
    input_topic: str
    feedback_topic: str

    @classmethod
    def for_device(cls, device_id: str) -> "DeviceChannels":
        normalized = (device_id or "").strip()
        if not normalized:
            raise ValueError("Device id cannot be empty")
        if "/" in normalized or "+" in normalized or "#" in normalized:
            raise ValueError(f"Device id {device_id!r} is not a valid topic segment")
        return cls(
            device_id=normalized,
            input_topic=f"{normalized}/{constants.INPUT_TOPIC_SUFFIX}",
            feedback_topic=f"{normalized}/{constants.FEEDBACK_TOPIC_SUFFIX}",
        )


@dataclass(frozen=True, slots=True)
class SessionContext:
    """Identity of the kiosk session issuing commands.

    Replaces reading ``machineId``/``userId`` from client storage at each
    call site; the dispatcher receives one of these at construction time.
    """

    device_id: str
    user_id: Optional[str] = None
    location: Optional[str] = None

    def __post_init__(self) -> None:
        # Validates the device id eagerly.
        DeviceChannels.for_device(self.device_id)

    @property
    def channels(self) -> DeviceChannels:
        return DeviceChannels.for_device(self.device_id)

    @property
    def display_name(self) -> str:
        return self.location or self.device_id

    def with_location(self, location: Optional[str]) -> "SessionContext":
        return SessionContext(
            device_id=self.device_id, user_id=self.user_id, location=location
        )

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"machineId": self.device_id}
        if self.user_id:
            payload["userId"] = self.user_id
        if self.location:
            payload["location"] = self.location
        return payload


def load_session(path: Optional[Path] = None) -> Optional[SessionContext]:
    """Load the stored session, returning ``None`` when nothing is stored."""

    session_path = path or constants.DEFAULT_SESSION_PATH
    if not session_path.exists():
        return None

    try:
        data = json.loads(session_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise SessionError(f"Unable to read session from {session_path}: {exc}") from exc

    if not isinstance(data, dict):
        raise SessionError(f"Session file {session_path} must contain a JSON object")

    device_id = data.get("machineId")
    if not isinstance(device_id, str) or not device_id.strip():
        raise SessionError(f"Session file {session_path} has no machineId")

    try:
        return SessionContext(
            device_id=device_id.strip(),
            user_id=data.get("userId") or None,
            location=data.get("location") or None,
        )
    except ValueError as exc:
        raise SessionError(str(exc)) from exc


def save_session(session: SessionContext, path: Optional[Path] = None) -> Path:
    session_path = path or constants.DEFAULT_SESSION_PATH
    session_path.parent.mkdir(parents=True, exist_ok=True)
    session_path.write_text(json.dumps(session.as_dict(), indent=2), encoding="utf-8")
    LOGGER.debug("Session for %s stored at %s", session.device_id, session_path)
    return session_path
