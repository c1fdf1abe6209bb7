"""Internal constants for the EnOS HTTP integration broker protocol."""

from __future__ import annotations

from pathlib import Path

PROTOCOL_VERSION = "1.1"

INTEGRATION_PATH = "/connect-service/v2.1/integration"
FILES_PATH = "/connect-service/v2.1/files"

TOKEN_GET_PATH = "/apim-token-service/v2.0/token/get"
TOKEN_REFRESH_PATH = "/apim-token-service/v2.0/token/refresh"

ACCESS_TOKEN_HEADER = "apim-accesstoken"

# Name of the multipart section that carries the JSON envelope
MESSAGE_PART = "enos-message"

LOCAL_FILE_SCHEME = "local://"
LARK_URI_SCHEME = "enos-lark://"

TOKEN_REFRESH_MARGIN = 300  # seconds before expiry to trigger proactive refresh
TOKEN_WAIT_TIMEOUT = 10.0  # seconds a caller waits for an in-flight auth

CONNECT_TIMEOUT = 10
READ_TIMEOUT = 120

PROGRESS_CHUNK_SIZE = 64 * 1024

CONFIG_DIR = Path.home() / ".config" / "enoslink"
CONFIG_FILE = CONFIG_DIR / "config.json"

JSON_HEADERS: dict[str, str] = {
    "Content-Type": "application/json;charset=UTF-8",
}
