"""
ChatRelay Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

# SQLite database file
_repo_default_db = BASE_DIR / "data" / "relay.db"
_user_default_db = Path.home() / ".chatrelay" / "relay.db"

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError):
        config_data = {}


def _flag(env_name: str, key: str, default: str) -> bool:
    return str(os.getenv(env_name, config_data.get(key, default))).lower() in {"1", "true", "yes"}


if os.getenv("CHATRELAY_DB"):
    DB_PATH = os.getenv("CHATRELAY_DB")
elif _repo_default_db.parent.exists():
    DB_PATH = str(_repo_default_db)
else:
    # Installed package mode normally runs outside repository checkout.
    DB_PATH = str(_user_default_db)

# HTTP server - default to localhost only
HOST = os.getenv("CHATRELAY_HOST", config_data.get("HOST", "127.0.0.1"))
PORT = int(os.getenv("CHATRELAY_PORT", config_data.get("PORT", "39865")))
RELAY_VERSION = "0.1.0"

# Typing indicators expire on the receiving side after this many seconds.
TYPING_TIMEOUT_SECONDS = float(os.getenv("CHATRELAY_TYPING_TIMEOUT", config_data.get("TYPING_TIMEOUT_SECONDS", "3")))

# Who hears online/offline transitions: "global" (every connection) or
# "organization" (only connections of the same organization).
PRESENCE_SCOPE = os.getenv("CHATRELAY_PRESENCE_SCOPE", config_data.get("PRESENCE_SCOPE", "global")).lower()
if PRESENCE_SCOPE not in {"global", "organization"}:
    PRESENCE_SCOPE = "global"

# Fan a direct message out to the sender's other devices as well.
ECHO_TO_SENDER_DEVICES = _flag("CHATRELAY_ECHO_TO_SENDER", "ECHO_TO_SENDER_DEVICES", "false")

# Tell the originating connection when a send was dropped or not persisted.
SEND_FAILED_EVENTS_ENABLED = _flag("CHATRELAY_SEND_FAILED_EVENTS", "SEND_FAILED_EVENTS_ENABLED", "true")

# Rate limiting: max WebSocket handshakes per minute per client host (0 = disabled)
RATE_LIMIT_HANDSHAKES_PER_MINUTE = int(os.getenv("CHATRELAY_HANDSHAKE_RATE_LIMIT", "60"))

# History pagination
HISTORY_DEFAULT_LIMIT = int(os.getenv("CHATRELAY_HISTORY_LIMIT", config_data.get("HISTORY_DEFAULT_LIMIT", "50")))
HISTORY_MAX_LIMIT = int(os.getenv("CHATRELAY_HISTORY_MAX_LIMIT", config_data.get("HISTORY_MAX_LIMIT", "200")))


def get_config_dict():
    return {
        "HOST": HOST,
        "PORT": PORT,
        "TYPING_TIMEOUT_SECONDS": TYPING_TIMEOUT_SECONDS,
        "PRESENCE_SCOPE": PRESENCE_SCOPE,
        "ECHO_TO_SENDER_DEVICES": ECHO_TO_SENDER_DEVICES,
        "SEND_FAILED_EVENTS_ENABLED": SEND_FAILED_EVENTS_ENABLED,
        "HISTORY_DEFAULT_LIMIT": HISTORY_DEFAULT_LIMIT,
        "HISTORY_MAX_LIMIT": HISTORY_MAX_LIMIT,
    }

