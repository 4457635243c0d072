"""Scheduler-facing client for the tracker's reset endpoints.

Run from cron, e.g. ``python reset_trigger.py daily`` shortly after the
server-side day boundary and ``python reset_trigger.py weekly`` once a week.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Any, List

import requests

from settings import load_dotenv

logger = logging.getLogger("reset_trigger")

RESET_KINDS = ("daily", "weekly")


def default_base_url() -> str:
    return os.environ.get("RESET_BASE_URL", "http://127.0.0.1:5000").rstrip("/")


def default_timeout() -> float:
    return float(os.environ.get("RESET_TIMEOUT_SECONDS", "10"))


def trigger_reset(kind: str, base_url: str | None = None, timeout: float | None = None) -> tuple[Any, int]:
    if kind not in RESET_KINDS:
        raise ValueError(f"Unknown reset kind {kind!r}")
    url = f"{(base_url or default_base_url()).rstrip('/')}/api/reset/{kind}"
    try:
        response = requests.post(url, timeout=timeout if timeout is not None else default_timeout())
    except requests.RequestException:
        logger.exception("Reset request to %s failed", url)
        return {"ok": False, "error": "Reset endpoint is unavailable"}, 502

    try:
        body: Any = response.json()
    except ValueError:
        body = {"ok": False, "raw": response.text}

    return body, response.status_code


def main(argv: List[str] | None = None) -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Trigger a tracker reset")
    parser.add_argument("kind", choices=RESET_KINDS)
    parser.add_argument("--base-url", default=None, help="Tracker server URL (default: RESET_BASE_URL)")
    parser.add_argument("--timeout", type=float, default=None, help="Request timeout in seconds")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    body, status = trigger_reset(args.kind, base_url=args.base_url, timeout=args.timeout)
    if status >= 400 or not isinstance(body, dict) or not body.get("ok"):
        step = body.get("step", args.kind) if isinstance(body, dict) else args.kind
        error = body.get("error", "unknown error") if isinstance(body, dict) else "unknown error"
        logger.error("%s reset failed at step %s (HTTP %s): %s", args.kind, step, status, error)
        return 1

    logger.info("%s reset completed", args.kind)
    return 0


if __name__ == "__main__":
    sys.exit(main())
