from __future__ import annotations

import logging
import os

logger = logging.getLogger(__name__)


def load_dotenv(path: str = ".env") -> None:
    if not os.path.exists(path):
        return

    try:
        with open(path, "r", encoding="utf-8") as env_file:
            for raw_line in env_file:
                line = raw_line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                value = value.strip().strip("'").strip('"')
                if key:
                    os.environ.setdefault(key, value)
    except OSError:
        logger.exception("Failed to read %s", path)


def required_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"{name} is not configured")
    return value


def env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        logger.warning("Ignoring non-integer %s, using %s", name, default)
        return default


def current_actor() -> str:
    """Identity every dashboard, log and export call runs as.

    Sourced from the environment until an authentication context exists.
    """
    return required_env("TRACKER_USER_ID")


def history_timestamp_column() -> str:
    return os.environ.get("HISTORY_TIMESTAMP_COLUMN", "snapshot_date").strip() or "snapshot_date"
