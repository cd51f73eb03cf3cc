#!/usr/bin/env python3
"""
Storage expiration sweep, meant for cron.

Usage:
    python scripts/pickup_storage_check.py [expiration_days] [warning_days]

Defaults come from PICKUP_STORAGE_GRACE_DAYS / PICKUP_STORAGE_WARNING_DAYS.
Exit code 0 on success, 1 on failure.
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv

from app.pudo.config import load_config
from app.pudo import models as _models  # noqa: F401
from app.pudo.modules.pickup.expiration import check_storage_expiration
from app.pudo.modules.pickup.notifications import dispatcher_from_config
from scripts._db_utils import script_session


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Warn about and expire packages waiting too long for pickup.")
    p.add_argument("expiration_days", nargs="?", type=int, default=None, help="Days before a package expires.")
    p.add_argument("warning_days", nargs="?", type=int, default=None, help="Days before expiration to warn.")
    return p


def run(argv: list[str] | None = None, *, now: datetime | None = None) -> int:
    args = build_parser().parse_args(argv)
    load_dotenv()
    cfg = load_config()
    try:
        with script_session(cfg["DATABASE_URL"]) as s:
            summary = check_storage_expiration(
                s,
                args.expiration_days,
                warning_days=args.warning_days,
                now=now,
                dispatcher=dispatcher_from_config(cfg),
                default_expiration_days=cfg["PICKUP_STORAGE_GRACE_DAYS"],
                default_warning_days=cfg["PICKUP_STORAGE_WARNING_DAYS"],
            )
    except Exception as e:
        print(f"Errore durante il controllo giacenze: {e}", file=sys.stderr)
        return 1

    print(
        "Giacenze: processati={processed} avvisati={warned} scaduti={expired} errori={failed} "
        "senza_recapito={unreachable} "
        "(preavviso {warning_days} giorni)".format(**summary)
    )
    return 0


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    sys.exit(run())


if __name__ == "__main__":
    main()
