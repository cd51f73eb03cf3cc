import os
import sys
from datetime import datetime
from pathlib import Path

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.pudo.models import Operator
from app.pudo.modules.pickup.models import Courier, PickupLocation
from scripts._db_utils import script_session

DEFAULT_LOCATION = {
    "name": "AG SERVIZI VIA PLINIO 72",
    "address": "VIA PLINIO IL VECCHIO 72 CASTELLAMMARE DI STABIA (NA) 80053",
}

DEFAULT_COURIERS = (
    "Bartolini (BRT)",
    "DHL Express",
    "GLS Italy",
    "SDA Express Courier",
    "Poste Italiane",
    "UPS",
    "FedEx",
    "TNT",
    "Nexive",
    "Amazon Logistics",
)


def seed_reference_data(s) -> None:
    """Idempotent: only inserts rows that are missing by name."""
    now = datetime.utcnow()
    if not s.query(PickupLocation).filter(PickupLocation.name == DEFAULT_LOCATION["name"]).one_or_none():
        s.add(PickupLocation(name=DEFAULT_LOCATION["name"], address=DEFAULT_LOCATION["address"], created_at=now, updated_at=now))

    existing = {name for (name,) in s.query(Courier.name).all()}
    for name in DEFAULT_COURIERS:
        if name not in existing:
            s.add(Courier(name=name, created_at=now, updated_at=now))


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed pickup reference data and the admin operator in an idempotent way.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@pudo.local").strip().lower()
    admin_name = (os.environ.get("ADMIN_NAME") or "Amministratore").strip()

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///pudo.db").strip()

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(db_url) as s:
        seed_reference_data(s)

        op = s.query(Operator).filter(Operator.email == admin_email).one_or_none()
        if not op:
            s.add(Operator(email=admin_email, name=admin_name, is_active=True))

    print("Initialized database (seed_only).")
    print(f"Admin operator: {admin_email}")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
