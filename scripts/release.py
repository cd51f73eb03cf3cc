"""
Release phase: apply the pickup schema migrations, then seed reference data.

    python scripts/release.py

Seeding covers the default pickup location, the courier list and the admin operator
from ADMIN_EMAIL, and is safe to repeat.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

logger = logging.getLogger("pudo.release")


def release_database_url() -> str:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL must be set for the release phase.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Pickup data needs Postgres in production; DATABASE_URL points at SQLite.")
    return db_url


def run_release() -> None:
    db_url = release_database_url()

    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")
    logger.info("Pickup schema is at head")

    from scripts import init_db

    init_db.seed_only(database_url=db_url)
    logger.info("Pickup reference data seeded")


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    run_release()


if __name__ == "__main__":
    main()
