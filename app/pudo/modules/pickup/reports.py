"""
Customer self-service reports ("I am expecting this parcel") and their link to packages.
"""
from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from .errors import NotFoundError, ReportLinkConflict, ValidationError
from .history import EVENT_REPORT_LINKED, EVENT_REPORT_UNLINKED, record_history
from .models import CustomerReport, PortalCustomer
from .service import clean_input, find_active_package_by_tracking, get_package
from .status import REPORT_STATUS_LABELS, ReportStatus

FEED_LIMIT = 10

_WHITESPACE_RE = re.compile(r"\s+")


def get_report(s: Session, report_id: int) -> CustomerReport:
    report = s.get(CustomerReport, report_id)
    if report is None:
        raise NotFoundError(f"Customer report {report_id} not found.")
    return report


def report_to_dict(report: CustomerReport) -> dict[str, Any]:
    customer = report.customer
    return {
        "id": report.id,
        "customer_id": report.customer_id,
        "customer_name": customer.name if customer else None,
        "customer_email": customer.email if customer else None,
        "customer_phone": customer.phone if customer else None,
        "tracking_code": report.tracking_code,
        "courier_name": report.courier_name,
        "expected_delivery_date": report.expected_delivery_date.isoformat() if report.expected_delivery_date else None,
        "delivery_location": report.delivery_location,
        "recipient_name": report.recipient_name,
        "notes": report.notes,
        "status": report.status.value,
        "status_label": REPORT_STATUS_LABELS[report.status],
        "pickup_id": report.pickup_id,
        "pickup_status": report.package.status.value if report.package else None,
        "created_at": report.created_at.isoformat(sep=" ", timespec="seconds"),
        "updated_at": report.updated_at.isoformat(sep=" ", timespec="seconds"),
    }


def link_customer_report_to_pickup(
    s: Session,
    report_id: int,
    package_id: int,
    resolution_status: ReportStatus | str = ReportStatus.CONFIRMED,
    *,
    actor_id: int | None = None,
    now: datetime | None = None,
) -> bool:
    """
    Attach a report to a package and set the report status. The package status is untouched.

    Linking again to the same package only updates the status. A report already linked to
    another package raises ReportLinkConflict; unlink it first.
    """
    status = ReportStatus.parse(resolution_status)
    report = get_report(s, report_id)
    package = get_package(s, package_id)
    if report.pickup_id is not None and report.pickup_id != package.id:
        raise ReportLinkConflict(
            f"Report {report.id} is already linked to package {report.pickup_id}; unlink it first."
        )

    now = now or datetime.utcnow()
    previous_status = report.status
    report.pickup_id = package.id
    report.status = status
    report.updated_at = now
    s.flush()

    record_history(
        s,
        package_id=package.id,
        event_type=EVENT_REPORT_LINKED,
        actor_id=actor_id,
        payload={
            "report_id": report.id,
            "customer_id": report.customer_id,
            "report_status": status.value,
            "previous_report_status": previous_status.value,
        },
        at=now,
    )
    return True


def unlink_customer_report(
    s: Session, report_id: int, *, actor_id: int | None = None, now: datetime | None = None
) -> bool:
    """Detach a report from its package; it goes back to 'reported'. False when it was not linked."""
    report = get_report(s, report_id)
    if report.pickup_id is None:
        return False

    now = now or datetime.utcnow()
    package_id = report.pickup_id
    report.pickup_id = None
    report.status = ReportStatus.REPORTED
    report.updated_at = now
    s.flush()

    record_history(
        s,
        package_id=package_id,
        event_type=EVENT_REPORT_UNLINKED,
        actor_id=actor_id,
        payload={"report_id": report.id, "customer_id": report.customer_id},
        at=now,
    )
    return True


def auto_link_customer_report(
    s: Session, report_id: int, *, actor_id: int | None = None, now: datetime | None = None
) -> int:
    """Link a report to the active package carrying its tracking code. Returns the package id."""
    report = get_report(s, report_id)
    tracking = clean_input(report.tracking_code, 100)
    if not tracking:
        raise ValidationError(f"Report {report.id} has no tracking code.")
    package = find_active_package_by_tracking(s, tracking)
    if package is None:
        raise NotFoundError(f"No active package with tracking {tracking}.")
    link_customer_report_to_pickup(s, report.id, package.id, ReportStatus.CONFIRMED, actor_id=actor_id, now=now)
    return package.id


def update_customer_report_status(
    s: Session, report_id: int, status: ReportStatus | str, *, now: datetime | None = None
) -> dict[str, Any]:
    new_status = ReportStatus.parse(status)
    report = get_report(s, report_id)
    report.status = new_status
    report.updated_at = now or datetime.utcnow()
    s.flush()
    return report_to_dict(report)


def get_customer_report(s: Session, report_id: int) -> dict[str, Any]:
    return report_to_dict(get_report(s, report_id))


def list_customer_reports(
    s: Session,
    *,
    status: ReportStatus | str | None = None,
    customer_id: int | None = None,
    linked: bool | None = None,
    search: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[dict[str, Any]]:
    stmt = select(CustomerReport).outerjoin(PortalCustomer, PortalCustomer.id == CustomerReport.customer_id)
    if status:
        stmt = stmt.where(CustomerReport.status == ReportStatus.parse(status))
    if customer_id:
        stmt = stmt.where(CustomerReport.customer_id == customer_id)
    if linked is True:
        stmt = stmt.where(CustomerReport.pickup_id.is_not(None))
    elif linked is False:
        stmt = stmt.where(CustomerReport.pickup_id.is_(None))
    term = clean_input(search, 120)
    if term:
        like = f"%{term.lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(CustomerReport.tracking_code).like(like),
                func.lower(func.coalesce(CustomerReport.recipient_name, "")).like(like),
                func.lower(func.coalesce(PortalCustomer.name, "")).like(like),
                func.lower(func.coalesce(PortalCustomer.email, "")).like(like),
            )
        )
    limit = max(1, min(int(limit), 200))
    stmt = stmt.order_by(CustomerReport.created_at.desc(), CustomerReport.id.desc()).limit(limit).offset(max(0, int(offset)))
    return [report_to_dict(r) for r in s.scalars(stmt).unique()]


def customer_report_statistics(s: Session) -> dict[str, Any]:
    by_status = {st.value: 0 for st in ReportStatus}
    for status, count in s.execute(select(CustomerReport.status, func.count()).group_by(CustomerReport.status)):
        by_status[ReportStatus(status).value] = int(count)
    linked = s.scalar(select(func.count()).select_from(CustomerReport).where(CustomerReport.pickup_id.is_not(None)))
    total = sum(by_status.values())
    return {"total": total, "by_status": by_status, "linked": int(linked or 0), "unlinked": total - int(linked or 0)}


def _feed_value(value: Any) -> str:
    return _WHITESPACE_RE.sub(" ", str(value or "")).strip()


def customer_label(report: CustomerReport) -> str:
    customer = report.customer
    if customer is not None:
        for candidate in (customer.name, customer.email, customer.phone):
            label = _feed_value(candidate)
            if label:
                return label
    if report.customer_id:
        return f"Cliente #{report.customer_id}"
    return "Cliente portale"


def tracking_label(report: CustomerReport) -> str:
    tracking = _feed_value(report.tracking_code)
    if not tracking:
        return "un nuovo pacco"
    courier = _feed_value(report.courier_name)
    if courier:
        return f"il pacco #{tracking} ({courier})"
    return f"il pacco #{tracking}"


def pickup_report_feed(s: Session, since_id: int = 0, limit: int = FEED_LIMIT, *, base_url: str = "") -> dict[str, Any]:
    """
    Reports newer than `since_id`, oldest first, for dashboard polling.
    `lastId` is the cursor for the next call (unchanged when nothing is new).
    """
    since_id = max(0, int(since_id or 0))
    limit = max(1, min(int(limit or FEED_LIMIT), 100))
    stmt = select(CustomerReport).where(CustomerReport.id > since_id).order_by(CustomerReport.id.asc()).limit(limit)

    events: list[dict[str, Any]] = []
    last_id = since_id
    for report in s.scalars(stmt).unique():
        last_id = max(last_id, report.id)
        who = customer_label(report)
        message = f"Portale pickup: {who} ha segnalato {tracking_label(report)}."
        recipient = _feed_value(report.recipient_name)
        if recipient:
            message += f" Destinatario: {recipient}."
        events.append(
            {
                "id": report.id,
                "message": message,
                "severity": "info",
                "url": f"{base_url.rstrip('/')}/api/pickup/reports/{report.id}",
                "createdAt": report.created_at.isoformat(sep=" ", timespec="seconds"),
                "trackingCode": _feed_value(report.tracking_code),
                "customerName": who,
            }
        )
    return {"events": events, "lastId": last_id}
