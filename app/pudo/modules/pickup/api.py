from __future__ import annotations

from typing import Any

from flask import Blueprint, current_app, jsonify, request

from app.pudo.db import db_session
from app.pudo.models import Operator
from app.pudo.storage import StorageError, storage_from_config
from app.pudo.modules.pickup.errors import (
    DuplicateTrackingError,
    InvalidTransitionError,
    NotFoundError,
    OtpAlreadyConsumed,
    OtpAttemptsExceeded,
    OtpExpired,
    OtpInvalid,
    PickupError,
    ReportLinkConflict,
    ValidationError,
)
from app.pudo.modules.pickup.notifications import NotificationDispatcher
from app.pudo.modules.pickup.otp import confirm_pickup_with_otp, generate_pickup_otp
from app.pudo.modules.pickup.qr import generate_qr_checkin
from app.pudo.modules.pickup.reports import (
    auto_link_customer_report,
    customer_report_statistics,
    get_customer_report,
    link_customer_report_to_pickup,
    list_customer_reports,
    pickup_report_feed,
    unlink_customer_report,
    update_customer_report_status,
)
from app.pudo.modules.pickup.service import (
    add_package,
    flag_package_issue,
    get_package_details,
    get_package_history,
    list_packages,
    resolve_package_issue,
)

bp = Blueprint("pickup_api", __name__)

_ERROR_STATUS: list[tuple[type[Exception], int]] = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (DuplicateTrackingError, 409),
    (InvalidTransitionError, 409),
    (ReportLinkConflict, 409),
    (OtpAlreadyConsumed, 409),
    (OtpExpired, 410),
    (OtpInvalid, 422),
    (OtpAttemptsExceeded, 429),
]


def _status_for(e: Exception) -> int:
    for cls, code in _ERROR_STATUS:
        if isinstance(e, cls):
            return code
    return 500


@bp.errorhandler(PickupError)
def _pickup_error(e: PickupError):
    db_session().rollback()
    code = _status_for(e)
    if code == 500:
        current_app.logger.exception("Pickup operation failed: %s", e)
    else:
        current_app.logger.info("Pickup request rejected (%s): %s", code, e)
    return jsonify({"error": str(e), "type": type(e).__name__}), code


@bp.errorhandler(StorageError)
def _storage_error(e: StorageError):
    db_session().rollback()
    current_app.logger.exception("Storage failure: %s", e)
    return jsonify({"error": "Storage unavailable.", "type": "StorageError"}), 500


def _payload() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def _actor_id(s, payload: dict[str, Any]) -> int | None:
    raw = payload.get("actor_id")
    if raw in (None, ""):
        return None
    try:
        actor_id = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("actor_id must be an integer.") from None
    op = s.get(Operator, actor_id)
    if op is None or not op.is_active:
        raise ValidationError(f"Unknown or inactive operator {actor_id}.")
    return actor_id


def _int_arg(name: str, default: int) -> int:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer.") from None


def _dispatcher() -> NotificationDispatcher:
    return current_app.extensions["pickup_dispatcher"]


# ---------- Packages ----------
@bp.get("/packages")
def packages_list():
    s = db_session()
    rows = list_packages(
        s,
        status=(request.args.get("status") or "").strip() or None,
        location_id=_int_arg("location_id", 0) or None,
        search=request.args.get("q"),
        limit=_int_arg("limit", 50),
        offset=_int_arg("offset", 0),
    )
    return jsonify({"packages": rows})


@bp.post("/packages")
def packages_create():
    s = db_session()
    payload = _payload()
    package_id = add_package(s, payload, actor_id=_actor_id(s, payload))
    s.commit()
    return jsonify({"id": package_id, "package": get_package_details(s, package_id)}), 201


@bp.get("/packages/<int:package_id>")
def packages_detail(package_id: int):
    return jsonify(get_package_details(db_session(), package_id))


@bp.get("/packages/<int:package_id>/history")
def packages_history(package_id: int):
    return jsonify({"events": get_package_history(db_session(), package_id)})


@bp.post("/packages/<int:package_id>/otp")
def packages_issue_otp(package_id: int):
    s = db_session()
    payload = _payload()
    cfg = current_app.config
    result = generate_pickup_otp(
        s,
        package_id,
        length=payload.get("length") or cfg.get("PICKUP_OTP_LENGTH"),
        valid_minutes=payload.get("valid_minutes") or cfg.get("PICKUP_OTP_VALID_MINUTES"),
        max_attempts=cfg.get("PICKUP_OTP_MAX_ATTEMPTS"),
        channel=payload.get("channel"),
        actor_id=_actor_id(s, payload),
        dispatcher=_dispatcher() if payload.get("notify", True) else None,
        supersede_previous=bool(cfg.get("PICKUP_OTP_SUPERSEDE_PREVIOUS")),
    )
    s.commit()
    return (
        jsonify(
            {
                "otp_id": result["otp_id"],
                "code": result["code"],
                "expires_at": result["expires_at"].isoformat(sep=" ", timespec="seconds"),
                "max_attempts": result["max_attempts"],
            }
        ),
        201,
    )


@bp.post("/packages/<int:package_id>/confirm")
def packages_confirm_pickup(package_id: int):
    s = db_session()
    payload = _payload()
    actor_id = _actor_id(s, payload)
    try:
        result = confirm_pickup_with_otp(
            s,
            package_id,
            payload.get("code") or "",
            actor_id=actor_id,
            dispatcher=_dispatcher(),
        )
    except OtpInvalid:
        # Keep the failed attempt count.
        s.commit()
        raise
    s.commit()
    return jsonify(result)


@bp.post("/packages/<int:package_id>/issue")
def packages_flag_issue(package_id: int):
    s = db_session()
    payload = _payload()
    package = flag_package_issue(s, package_id, reason=payload.get("reason") or "", actor_id=_actor_id(s, payload))
    s.commit()
    return jsonify(package)


@bp.post("/packages/<int:package_id>/issue/resolve")
def packages_resolve_issue(package_id: int):
    s = db_session()
    payload = _payload()
    package = resolve_package_issue(s, package_id, actor_id=_actor_id(s, payload), note=payload.get("note"))
    s.commit()
    return jsonify(package)


# ---------- Customer reports ----------
@bp.get("/reports")
def reports_list():
    linked_raw = (request.args.get("linked") or "").strip().lower()
    linked = {"1": True, "true": True, "0": False, "false": False}.get(linked_raw)
    rows = list_customer_reports(
        db_session(),
        status=(request.args.get("status") or "").strip() or None,
        customer_id=_int_arg("customer_id", 0) or None,
        linked=linked,
        search=request.args.get("q"),
        limit=_int_arg("limit", 50),
        offset=_int_arg("offset", 0),
    )
    return jsonify({"reports": rows})


@bp.get("/reports/stats")
def reports_stats():
    return jsonify(customer_report_statistics(db_session()))


@bp.get("/reports/<int:report_id>")
def reports_detail(report_id: int):
    return jsonify(get_customer_report(db_session(), report_id))


@bp.post("/reports/<int:report_id>/link")
def reports_link(report_id: int):
    s = db_session()
    payload = _payload()
    try:
        package_id = int(payload.get("package_id"))
    except (TypeError, ValueError):
        raise ValidationError("package_id is required.") from None
    link_customer_report_to_pickup(
        s,
        report_id,
        package_id,
        payload.get("status") or "confirmed",
        actor_id=_actor_id(s, payload),
    )
    s.commit()
    return jsonify({"ok": True, "report": get_customer_report(s, report_id)})


@bp.post("/reports/<int:report_id>/unlink")
def reports_unlink(report_id: int):
    s = db_session()
    payload = _payload()
    changed = unlink_customer_report(s, report_id, actor_id=_actor_id(s, payload))
    s.commit()
    return jsonify({"ok": True, "changed": changed, "report": get_customer_report(s, report_id)})


@bp.post("/reports/<int:report_id>/auto-link")
def reports_auto_link(report_id: int):
    s = db_session()
    payload = _payload()
    package_id = auto_link_customer_report(s, report_id, actor_id=_actor_id(s, payload))
    s.commit()
    return jsonify({"ok": True, "package_id": package_id, "report": get_customer_report(s, report_id)})


@bp.post("/reports/<int:report_id>/status")
def reports_set_status(report_id: int):
    s = db_session()
    payload = _payload()
    report = update_customer_report_status(s, report_id, payload.get("status") or "")
    s.commit()
    return jsonify(report)


@bp.get("/report-feed")
def report_feed():
    feed = pickup_report_feed(
        db_session(),
        since_id=_int_arg("since_id", 0),
        base_url=current_app.config.get("APP_URL") or "",
    )
    resp = jsonify(feed)
    resp.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
    return resp


# ---------- Check-in QR ----------
@bp.post("/checkin-qr")
def checkin_qr():
    payload = _payload()
    location_raw = payload.get("location_id")
    try:
        location_id = int(location_raw) if location_raw not in (None, "") else None
    except (TypeError, ValueError):
        raise ValidationError("location_id must be an integer.") from None
    key = generate_qr_checkin(
        storage_from_config(current_app.config),
        current_app.config,
        location_id=location_id,
        callback_url=payload.get("callback_url"),
    )
    return jsonify({"key": key}), 201
