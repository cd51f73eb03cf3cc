#!/usr/bin/env python3
"""
Container entry point for the pickup API: release phase, then gunicorn.

    python scripts/start.py

PORT (default 8080) and WEB_CONCURRENCY (default 2) control the gunicorn bind and
worker count. The storage sweep is not started here; schedule
scripts/pickup_storage_check.py separately.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

logger = logging.getLogger("pudo.start")


def _int_env(name: str, default: int, *, low: int, high: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise SystemExit(f"{name}={raw!r} is not an integer.") from None
    if not low <= value <= high:
        raise SystemExit(f"{name}={value} must be between {low} and {high}.")
    return value


def gunicorn_argv(port: int, workers: int) -> list[str]:
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", str(workers),
        "--timeout", "60",
        "--preload",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    port = _int_env("PORT", 8080, low=1, high=65535)
    workers = _int_env("WEB_CONCURRENCY", 2, low=1, high=32)

    from scripts.release import run_release

    try:
        run_release()
    except Exception:
        logger.exception("Release phase failed; not starting the API")
        sys.exit(1)

    logger.info("Starting pickup API on port %s with %s workers", port, workers)
    # gunicorn replaces this process and receives its signals
    os.execvp("gunicorn", gunicorn_argv(port, workers))


if __name__ == "__main__":
    main()
