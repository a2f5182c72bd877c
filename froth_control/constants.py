"""Constants used across the froth-control package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "froth-control"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".froth" / DEFAULT_CONFIG_FILENAME
DEFAULT_SESSION_PATH = Path.home() / ".froth" / "session.json"

DEFAULT_BROKER_HOST = "localhost"
DEFAULT_BROKER_PORT = 1883
DEFAULT_WS_PATH = "/mqtt"
CLIENT_ID_PREFIX = "froth_frontend"

DEFAULT_API_BASE_URL = "http://localhost:5000/api"

INPUT_TOPIC_SUFFIX = "input"
FEEDBACK_TOPIC_SUFFIX = "feedback"

ACK_TOKEN = "got"
COMPLETION_TOKEN = "done"

COMMAND_QOS = 1
