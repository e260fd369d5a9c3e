"""Shared dagwatch configuration utilities.

Centralises reading of ~/.dagwatch/configuration.json so that the client,
the run loop and the CLI share one implementation.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Wire constants
# ---------------------------------------------------------------------------

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
FRAME_DELIMITER = "\n\n"

# Reserved node that collects token/answer content
FINAL_RESPONSE_NODE_ID = "__final_response__"
FINAL_RESPONSE_NODE_NAME = "Final response"

DEFAULT_BASE_URL = "http://127.0.0.1:8080/api"
DEFAULT_TIMEOUT = 30.0

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

DAGWATCH_CONFIG_FILE = Path.home() / ".dagwatch" / "configuration.json"


def get_config_path() -> Path:
    """Configuration file location, overridable with DAGWATCH_CONFIG."""
    override = os.environ.get("DAGWATCH_CONFIG")
    return Path(override) if override else DAGWATCH_CONFIG_FILE


def get_dagwatch_config() -> dict[str, Any]:
    """Load dagwatch configuration; a missing or unreadable file yields {}."""
    path = get_config_path()
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_base_url() -> str:
    """Agent service base URL (DAGWATCH_BASE_URL wins over the file)."""
    return (
        os.environ.get("DAGWATCH_BASE_URL")
        or get_dagwatch_config().get("api", {}).get("base_url")
        or DEFAULT_BASE_URL
    )


def get_token() -> str | None:
    """Bearer token from DAGWATCH_TOKEN or the env var named in configuration."""
    token = os.environ.get("DAGWATCH_TOKEN")
    if token:
        return token
    api = get_dagwatch_config().get("api", {})
    token_env_var = api.get("token_env_var")
    if token_env_var:
        return os.environ.get(token_env_var)
    return api.get("token")


def get_timeout() -> float:
    return float(get_dagwatch_config().get("api", {}).get("timeout", DEFAULT_TIMEOUT))


# ---------------------------------------------------------------------------
# ClientConfig – shared by the HTTP client and the CLI
# ---------------------------------------------------------------------------


@dataclass
class ClientConfig:
    """Agent service connection settings loaded from ~/.dagwatch/configuration.json."""

    base_url: str = field(default_factory=get_base_url)
    token: str | None = field(default_factory=get_token)
    timeout: float = field(default_factory=get_timeout)

    chat_path: str = "/client/agent/chat"
    review_path: str = "/client/agent/review"
    detail_path: str = "/client/agent/detail/{agent_id}"
    save_path: str = "/client/agent/save"
    snapshot_path: str = "/client/agent/snapshot/{agent_id}/{conversation_id}"
    history_path: str = "/client/agent/history/{conversation_id}"

    def headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers
