from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import PackageHistoryEvent
from .status import PackageStatus

# Event types written by this module. Notification outcomes are "notify_<template>"
# or "notify_<template>_failed".
EVENT_CREATED = "created"
EVENT_STATUS_CHANGE = "status_change"
EVENT_OTP_ISSUED = "otp_issued"
EVENT_OTP_CONFIRMED = "otp_confirmed"
EVENT_STATUS_EXPIRED = "status_expired"
EVENT_STORAGE_WARNING = "notify_storage_warning"
EVENT_STORAGE_WARNING_UNREACHABLE = "notify_storage_warning_unreachable"
EVENT_REPORT_LINKED = "report_linked"
EVENT_REPORT_UNLINKED = "report_unlinked"


def _status_value(status: PackageStatus | str | None) -> str | None:
    if status is None:
        return None
    return status.value if isinstance(status, PackageStatus) else str(status)


def record_history(
    s: Session,
    *,
    package_id: int,
    event_type: str,
    actor_id: int | None = None,
    previous_status: PackageStatus | str | None = None,
    new_status: PackageStatus | str | None = None,
    payload: dict[str, Any] | None = None,
    at: datetime | None = None,
) -> PackageHistoryEvent:
    """
    Append-only history helper; no update/delete counterpart exists.
    """
    ev = PackageHistoryEvent(
        package_id=package_id,
        event_type=event_type,
        previous_status=_status_value(previous_status),
        new_status=_status_value(new_status),
        actor_user_id=actor_id,
        payload_json=json.dumps(payload, sort_keys=True, default=str) if payload else None,
        created_at=at or datetime.utcnow(),
    )
    s.add(ev)
    s.flush()
    return ev


def list_history(s: Session, package_id: int) -> list[PackageHistoryEvent]:
    stmt = (
        select(PackageHistoryEvent)
        .where(PackageHistoryEvent.package_id == package_id)
        .order_by(PackageHistoryEvent.created_at.asc(), PackageHistoryEvent.id.asc())
    )
    return list(s.scalars(stmt))


def latest_event_since(s: Session, package_id: int, event_type: str, since: datetime) -> PackageHistoryEvent | None:
    stmt = (
        select(PackageHistoryEvent)
        .where(
            PackageHistoryEvent.package_id == package_id,
            PackageHistoryEvent.event_type == event_type,
            PackageHistoryEvent.created_at >= since,
        )
        .order_by(PackageHistoryEvent.created_at.desc(), PackageHistoryEvent.id.desc())
        .limit(1)
    )
    return s.scalars(stmt).first()


def history_to_dict(ev: PackageHistoryEvent) -> dict[str, Any]:
    return {
        "id": ev.id,
        "package_id": ev.package_id,
        "event_type": ev.event_type,
        "previous_status": ev.previous_status,
        "new_status": ev.new_status,
        "actor_id": ev.actor_user_id,
        "payload": json.loads(ev.payload_json) if ev.payload_json else None,
        "created_at": ev.created_at.isoformat(sep=" ", timespec="seconds"),
    }
