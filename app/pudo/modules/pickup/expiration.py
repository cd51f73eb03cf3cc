"""
Storage expiration sweep.

Run periodically (scripts/pickup_storage_check.py). For every package still waiting on
the shelf it either expires it, warns the customer once per storage period, or leaves
it alone. Each package is handled in its own SAVEPOINT.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import NotificationDeliveryError, RecipientUnreachable
from .history import EVENT_STATUS_EXPIRED, EVENT_STORAGE_WARNING, EVENT_STORAGE_WARNING_UNREACHABLE, latest_event_since
from .models import Package
from .notifications import LogDispatcher, NotificationDispatcher, format_datetime_local, notify_customer
from .service import apply_transition, get_package
from .status import PackageStatus

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_GRACE_DAYS = 15
DEFAULT_STORAGE_WARNING_DAYS = 3

OUTCOME_WARNED = "warned"
OUTCOME_EXPIRED = "expired"
OUTCOME_FAILED = "failed"
OUTCOME_UNREACHABLE = "unreachable"


def _normalize_days(
    expiration_days: int | None, warning_days: int | None, default_expiration_days: int, default_warning_days: int
) -> tuple[int, int]:
    expiration_days = int(expiration_days or 0)
    if expiration_days <= 0:
        expiration_days = int(default_expiration_days) if default_expiration_days > 0 else DEFAULT_STORAGE_GRACE_DAYS
    if warning_days is None:
        warning_days = default_warning_days
    warning_days = max(0, min(int(warning_days), expiration_days))
    return expiration_days, warning_days


def _process_package(
    s: Session,
    package_id: int,
    *,
    expiration_days: int,
    now: datetime,
    dispatcher: NotificationDispatcher,
    actor_id: int | None,
) -> str | None:
    package = get_package(s, package_id, for_update=True)
    if package.status != PackageStatus.IN_GIACENZA:
        # Picked up or flagged since the candidate query.
        return None

    stored_since = package.status_changed_at
    age = now - stored_since
    expires_on = stored_since + timedelta(days=expiration_days)
    context = {
        "days_in_storage": age.days,
        "expiration_date": format_datetime_local(expires_on),
    }

    if age >= timedelta(days=expiration_days):
        apply_transition(
            s,
            package,
            PackageStatus.IN_GIACENZA_SCADUTO,
            event_type=EVENT_STATUS_EXPIRED,
            actor_id=actor_id,
            now=now,
            payload={"days_in_storage": age.days, "expiration_days": expiration_days},
        )
        try:
            notify_customer(s, package, "storage_expired", dispatcher=dispatcher, context=context, actor_id=actor_id, now=now)
        except NotificationDeliveryError as e:
            logger.warning("Package %s expired; customer not notified: %s", package.id, e)
        return OUTCOME_EXPIRED

    if latest_event_since(s, package.id, EVENT_STORAGE_WARNING, stored_since) is not None:
        return None
    # No address for this transport: reported once per storage period.
    if latest_event_since(s, package.id, EVENT_STORAGE_WARNING_UNREACHABLE, stored_since) is not None:
        return None

    try:
        notify_customer(s, package, "storage_warning", dispatcher=dispatcher, context=context, actor_id=actor_id, now=now)
    except RecipientUnreachable as e:
        logger.info("Storage warning for package %s skipped: %s", package.id, e)
        return OUTCOME_UNREACHABLE
    except NotificationDeliveryError as e:
        logger.warning("Storage warning for package %s not delivered: %s", package.id, e)
        return OUTCOME_FAILED
    return OUTCOME_WARNED


def check_storage_expiration(
    s: Session,
    expiration_days: int | None = None,
    *,
    warning_days: int | None = None,
    now: datetime | None = None,
    dispatcher: NotificationDispatcher | None = None,
    actor_id: int | None = None,
    default_expiration_days: int = DEFAULT_STORAGE_GRACE_DAYS,
    default_warning_days: int = DEFAULT_STORAGE_WARNING_DAYS,
) -> dict[str, Any]:
    """
    Sweep packages waiting on the shelf.

    Candidates are packages in_giacenza whose storage period started at least
    (expiration_days - warning_days) days before `now`. Those past expiration_days
    become in_giacenza_scaduto; the rest get one storage warning per storage period.
    Customers the transport cannot reach are counted as unreachable once per storage
    period instead of failing on every run.
    Returns {processed, warned, expired, failed, unreachable, warning_days}.
    """
    now = now or datetime.utcnow()
    dispatcher = dispatcher or LogDispatcher()
    expiration_days, warning_days = _normalize_days(
        expiration_days, warning_days, default_expiration_days, default_warning_days
    )

    cutoff = now - timedelta(days=expiration_days - warning_days)
    candidate_ids = list(
        s.scalars(
            select(Package.id)
            .where(Package.status == PackageStatus.IN_GIACENZA, Package.status_changed_at <= cutoff)
            .order_by(Package.status_changed_at.asc(), Package.id.asc())
        )
    )

    summary: dict[str, Any] = {
        "processed": 0,
        "warned": 0,
        "expired": 0,
        "failed": 0,
        "unreachable": 0,
        "warning_days": warning_days,
    }
    for package_id in candidate_ids:
        summary["processed"] += 1
        try:
            with s.begin_nested():
                outcome = _process_package(
                    s,
                    package_id,
                    expiration_days=expiration_days,
                    now=now,
                    dispatcher=dispatcher,
                    actor_id=actor_id,
                )
        except Exception:
            logger.exception("Storage sweep failed for package %s; continuing", package_id)
            summary["failed"] += 1
            continue
        if outcome:
            summary[outcome] += 1

    logger.info(
        "Storage sweep: processed=%s warned=%s expired=%s failed=%s unreachable=%s (expiration_days=%s warning_days=%s)",
        summary["processed"],
        summary["warned"],
        summary["expired"],
        summary["failed"],
        summary["unreachable"],
        expiration_days,
        warning_days,
    )
    return summary
