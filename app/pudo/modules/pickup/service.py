"""
Pickup package service layer.
Handles intake, read projections and the guarded status transitions.
"""
from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import DuplicateTrackingError, NotFoundError, ValidationError
from .history import EVENT_CREATED, EVENT_STATUS_CHANGE, history_to_dict, list_history, record_history
from .models import Courier, Package, PickupLocation
from .status import ACTIVE_STATUSES, INITIAL_STATUS, PackageStatus, ensure_transition

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_WHITESPACE_RE = re.compile(r"\s+")


def clean_input(value: Any, max_length: int = 255) -> str:
    """Trim, collapse whitespace, drop control characters and cap length."""
    if value is None:
        return ""
    text = "".join(ch if ch.isprintable() else " " for ch in str(value))
    text = _WHITESPACE_RE.sub(" ", text).strip()
    return text[:max_length]


def _optional_int(value: Any, field: str, errors: list[str]) -> int | None:
    if value in (None, "", 0, "0"):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        errors.append(f"{field} must be an integer.")
        return None


def validate_package_payload(s: Session, payload: dict) -> tuple[dict[str, Any], list[str]]:
    """Normalize an intake payload. Returns (clean fields, errors)."""
    errors: list[str] = []
    fields: dict[str, Any] = {
        "tracking": clean_input(payload.get("tracking"), 100),
        "customer_name": clean_input(payload.get("customer_name"), 150),
        "customer_phone": clean_input(payload.get("customer_phone"), 50),
        "customer_email": clean_input(payload.get("customer_email"), 160).lower() or None,
        "notes": clean_input(payload.get("notes"), 500) or None,
    }
    if not fields["tracking"]:
        errors.append("Tracking code is required.")
    if not fields["customer_name"]:
        errors.append("Customer name is required.")
    if not fields["customer_phone"]:
        errors.append("Customer phone is required.")
    if fields["customer_email"] and not _EMAIL_RE.match(fields["customer_email"]):
        errors.append("Customer email is not valid.")

    status = payload.get("status")
    if status not in (None, "", INITIAL_STATUS, INITIAL_STATUS.value):
        errors.append(f"New packages always start as '{INITIAL_STATUS.value}'.")

    courier_id = _optional_int(payload.get("courier_id"), "courier_id", errors)
    if courier_id is not None and s.get(Courier, courier_id) is None:
        errors.append("Selected courier does not exist.")
    location_id = _optional_int(payload.get("pickup_location_id"), "pickup_location_id", errors)
    if location_id is not None and s.get(PickupLocation, location_id) is None:
        errors.append("Selected pickup location does not exist.")
    fields["courier_id"] = courier_id
    fields["pickup_location_id"] = location_id
    return fields, errors


def find_active_package_by_tracking(s: Session, tracking: str) -> Package | None:
    tracking = clean_input(tracking, 100)
    if not tracking:
        return None
    stmt = (
        select(Package)
        .where(Package.tracking == tracking, Package.status.in_(list(ACTIVE_STATUSES)))
        .order_by(Package.id.desc())
        .limit(1)
    )
    return s.scalars(stmt).first()


def add_package(s: Session, payload: dict, *, actor_id: int | None = None, now: datetime | None = None) -> int:
    """Register an incoming parcel. Returns the new package id."""
    fields, errors = validate_package_payload(s, payload)
    if errors:
        raise ValidationError(" ".join(errors))

    if find_active_package_by_tracking(s, fields["tracking"]) is not None:
        raise DuplicateTrackingError(f"Tracking {fields['tracking']} is already registered on an active package.")

    now = now or datetime.utcnow()
    package = Package(
        **fields,
        status=INITIAL_STATUS,
        created_at=now,
        updated_at=now,
        status_changed_at=now,
        created_by_user_id=actor_id,
        updated_by_user_id=actor_id,
    )
    # A concurrent intake can pass the lookup above; the partial unique index catches it.
    try:
        with s.begin_nested():
            s.add(package)
            s.flush()  # Get ID
    except IntegrityError:
        if find_active_package_by_tracking(s, fields["tracking"]) is not None:
            raise DuplicateTrackingError(
                f"Tracking {fields['tracking']} is already registered on an active package."
            ) from None
        raise

    record_history(
        s,
        package_id=package.id,
        event_type=EVENT_CREATED,
        actor_id=actor_id,
        new_status=package.status,
        payload={
            "tracking": package.tracking,
            "courier_id": package.courier_id,
            "pickup_location_id": package.pickup_location_id,
        },
        at=now,
    )
    return package.id


def get_package(s: Session, package_id: int, *, for_update: bool = False) -> Package:
    if for_update:
        stmt = (
            select(Package)
            .where(Package.id == package_id)
            .with_for_update(of=Package)
            .execution_options(populate_existing=True)
        )
        package = s.scalars(stmt).first()
    else:
        package = s.get(Package, package_id)
    if package is None:
        raise NotFoundError(f"Package {package_id} not found.")
    return package


def package_to_dict(package: Package) -> dict[str, Any]:
    location = package.pickup_location
    courier = package.courier
    return {
        "id": package.id,
        "tracking": package.tracking,
        "status": package.status.value,
        "status_label": package.status.label,
        "customer_name": package.customer_name,
        "customer_phone": package.customer_phone,
        "customer_email": package.customer_email,
        "notes": package.notes,
        "courier_id": package.courier_id,
        "courier_name": courier.name if courier else None,
        "pickup_location_id": package.pickup_location_id,
        "location_name": location.name if location else None,
        "location_address": location.address if location else None,
        "created_at": package.created_at.isoformat(sep=" ", timespec="seconds"),
        "updated_at": package.updated_at.isoformat(sep=" ", timespec="seconds"),
        "status_changed_at": package.status_changed_at.isoformat(sep=" ", timespec="seconds"),
    }


def get_package_details(s: Session, package_id: int) -> dict[str, Any]:
    return package_to_dict(get_package(s, package_id))


def get_package_history(s: Session, package_id: int) -> list[dict[str, Any]]:
    get_package(s, package_id)
    return [history_to_dict(ev) for ev in list_history(s, package_id)]


def list_packages(
    s: Session,
    *,
    status: PackageStatus | str | None = None,
    location_id: int | None = None,
    search: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[dict[str, Any]]:
    stmt = select(Package)
    if status:
        try:
            stmt = stmt.where(Package.status == PackageStatus(status))
        except ValueError:
            raise ValidationError(f"Unknown package status '{status}'.") from None
    if location_id:
        stmt = stmt.where(Package.pickup_location_id == location_id)
    term = clean_input(search, 120)
    if term:
        like = f"%{term.lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(Package.tracking).like(like),
                func.lower(Package.customer_name).like(like),
                func.lower(func.coalesce(Package.customer_email, "")).like(like),
                Package.customer_phone.like(f"%{term}%"),
            )
        )
    limit = max(1, min(int(limit), 200))
    stmt = stmt.order_by(Package.created_at.desc(), Package.id.desc()).limit(limit).offset(max(0, int(offset)))
    return [package_to_dict(p) for p in s.scalars(stmt).unique()]


def apply_transition(
    s: Session,
    package: Package,
    target: PackageStatus,
    *,
    event_type: str,
    actor_id: int | None,
    now: datetime,
    payload: dict[str, Any] | None = None,
) -> PackageStatus:
    """
    The single place a package status changes. Validates against the transition
    table, stamps status_changed_at and appends the history event.
    Returns the previous status.
    """
    previous = package.status
    ensure_transition(previous, target)
    package.status = target
    package.status_changed_at = now
    package.updated_at = now
    package.updated_by_user_id = actor_id
    s.flush()
    record_history(
        s,
        package_id=package.id,
        event_type=event_type,
        actor_id=actor_id,
        previous_status=previous,
        new_status=target,
        payload=payload,
        at=now,
    )
    return previous


def flag_package_issue(
    s: Session, package_id: int, *, reason: str, actor_id: int | None = None, now: datetime | None = None
) -> dict[str, Any]:
    """Move a waiting package to in_corso while an operator handles a problem."""
    reason = clean_input(reason, 500)
    if not reason:
        raise ValidationError("A reason is required to flag a package.")
    package = get_package(s, package_id, for_update=True)
    apply_transition(
        s,
        package,
        PackageStatus.IN_CORSO,
        event_type=EVENT_STATUS_CHANGE,
        actor_id=actor_id,
        now=now or datetime.utcnow(),
        payload={"reason": reason},
    )
    return package_to_dict(package)


def resolve_package_issue(
    s: Session, package_id: int, *, actor_id: int | None = None, now: datetime | None = None, note: str | None = None
) -> dict[str, Any]:
    """Put a flagged package back on the shelf; this starts a new storage period."""
    package = get_package(s, package_id, for_update=True)
    note = clean_input(note, 500)
    apply_transition(
        s,
        package,
        PackageStatus.IN_GIACENZA,
        event_type=EVENT_STATUS_CHANGE,
        actor_id=actor_id,
        now=now or datetime.utcnow(),
        payload={"note": note} if note else None,
    )
    return package_to_dict(package)
