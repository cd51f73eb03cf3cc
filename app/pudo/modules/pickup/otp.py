"""
One-time pickup codes.

Codes are random digits from `secrets`; only a werkzeug hash is stored. Confirmation
locks the package row and consumes the code with a compare-and-set update, so two
concurrent confirmations cannot both succeed. Every wrong code counts against the
open codes of the package; once they are all used up the package needs a new code.
"""
from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from .errors import (
    InvalidTransitionError,
    NotificationDeliveryError,
    OtpAlreadyConsumed,
    OtpAttemptsExceeded,
    OtpExpired,
    OtpInvalid,
    ValidationError,
)
from .history import EVENT_OTP_CONFIRMED, EVENT_OTP_ISSUED, record_history
from .models import PickupOtp
from .notifications import NotificationDispatcher, format_datetime_local, notify_customer
from .service import apply_transition, get_package
from .status import PackageStatus, ensure_transition

logger = logging.getLogger(__name__)

DEFAULT_OTP_LENGTH = 6
DEFAULT_OTP_VALID_MINUTES = 1440
DEFAULT_OTP_MAX_ATTEMPTS = 5
MIN_OTP_LENGTH = 4
MAX_OTP_LENGTH = 10

_HASH_METHOD = "pbkdf2:sha256:60000"


def generate_code(length: int) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(length))


def _optional_int(value: Any, name: str) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer.")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer.") from None


def _clamp_length(length: Any) -> int:
    length = _optional_int(length, "length")
    if not length:
        return DEFAULT_OTP_LENGTH
    return max(MIN_OTP_LENGTH, min(MAX_OTP_LENGTH, length))


def _positive_or_default(value: Any, name: str, default: int) -> int:
    value = _optional_int(value, name)
    return value if value and value > 0 else default


def generate_pickup_otp(
    s: Session,
    package_id: int,
    *,
    length: int | None = DEFAULT_OTP_LENGTH,
    valid_minutes: int | None = DEFAULT_OTP_VALID_MINUTES,
    max_attempts: int | None = DEFAULT_OTP_MAX_ATTEMPTS,
    channel: str | None = None,
    actor_id: int | None = None,
    now: datetime | None = None,
    dispatcher: NotificationDispatcher | None = None,
    supersede_previous: bool = False,
) -> dict[str, Any]:
    """
    Issue a new code for a package that is still waiting for pickup.

    The plaintext code is returned once and never stored. With supersede_previous,
    codes issued earlier and still open are expired at `now`.
    """
    now = now or datetime.utcnow()
    length = _clamp_length(length)
    valid_minutes = _positive_or_default(valid_minutes, "valid_minutes", DEFAULT_OTP_VALID_MINUTES)
    max_attempts = _positive_or_default(max_attempts, "max_attempts", DEFAULT_OTP_MAX_ATTEMPTS)
    channel = (channel or "").strip()[:20] or None

    package = get_package(s, package_id, for_update=True)
    if package.status.is_terminal:
        raise InvalidTransitionError(f"Package {package_id} is '{package.status.value}'; no OTP can be issued.")

    superseded = 0
    if supersede_previous:
        result = s.execute(
            update(PickupOtp)
            .where(
                PickupOtp.package_id == package.id,
                PickupOtp.consumed_at.is_(None),
                PickupOtp.expires_at > now,
            )
            .values(expires_at=now)
            .execution_options(synchronize_session="fetch")
        )
        superseded = result.rowcount or 0

    code = generate_code(length)
    otp = PickupOtp(
        package_id=package.id,
        code_hash=generate_password_hash(code, method=_HASH_METHOD),
        expires_at=now + timedelta(minutes=valid_minutes),
        attempts=0,
        max_attempts=max_attempts,
        channel=channel,
        created_by_user_id=actor_id,
        created_at=now,
    )
    s.add(otp)
    s.flush()

    payload: dict[str, Any] = {
        "otp_id": otp.id,
        "expires_at": otp.expires_at.isoformat(timespec="seconds"),
        "max_attempts": max_attempts,
    }
    if channel:
        payload["channel"] = channel
    if superseded:
        payload["superseded"] = superseded
    record_history(s, package_id=package.id, event_type=EVENT_OTP_ISSUED, actor_id=actor_id, payload=payload, at=now)

    if dispatcher is not None:
        try:
            notify_customer(
                s,
                package,
                "otp_generated",
                dispatcher=dispatcher,
                context={"otp": code, "expiration_date": format_datetime_local(otp.expires_at)},
                actor_id=actor_id,
                now=now,
            )
        except NotificationDeliveryError as e:
            logger.warning("OTP issued for package %s but not delivered: %s", package.id, e)

    return {"otp_id": otp.id, "code": code, "expires_at": otp.expires_at, "max_attempts": max_attempts}


def _open_otps(s: Session, package_id: int, now: datetime) -> list[PickupOtp]:
    stmt = (
        select(PickupOtp)
        .where(
            PickupOtp.package_id == package_id,
            PickupOtp.consumed_at.is_(None),
            PickupOtp.expires_at > now,
        )
        .execution_options(populate_existing=True)
    )
    return list(s.scalars(stmt))


def _count_failed_attempt(s: Session, otps: list[PickupOtp]) -> None:
    if not otps:
        return
    s.execute(
        update(PickupOtp)
        .where(PickupOtp.id.in_([o.id for o in otps]))
        .values(attempts=PickupOtp.attempts + 1)
        .execution_options(synchronize_session="fetch")
    )


def _find_matching_otp(s: Session, package_id: int, code: str) -> PickupOtp | None:
    stmt = (
        select(PickupOtp)
        .where(PickupOtp.package_id == package_id)
        .order_by(PickupOtp.created_at.desc(), PickupOtp.id.desc())
        .execution_options(populate_existing=True)
    )
    for otp in s.scalars(stmt):
        if check_password_hash(otp.code_hash, code):
            return otp
    return None


def confirm_pickup_with_otp(
    s: Session,
    package_id: int,
    code: str,
    *,
    actor_id: int | None = None,
    now: datetime | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> dict[str, Any]:
    """
    Consume a code and hand the package over (status -> ritirato).

    Raises OtpInvalid, OtpExpired, OtpAlreadyConsumed or OtpAttemptsExceeded and leaves
    the package untouched. A wrong code still bumps the attempt counter of every open
    code; callers commit that before reporting the error.
    """
    now = now or datetime.utcnow()
    code = (str(code) if code is not None else "").strip()
    if not code:
        raise OtpInvalid("OTP code is required.")

    package = get_package(s, package_id, for_update=True)
    open_otps = _open_otps(s, package.id, now)
    if open_otps and all(o.attempts >= o.max_attempts for o in open_otps):
        raise OtpAttemptsExceeded("Too many wrong OTP attempts; a new code must be issued.")

    otp = _find_matching_otp(s, package.id, code)
    if otp is None:
        _count_failed_attempt(s, open_otps)
        logger.info("Wrong OTP for package %s", package.id)
        raise OtpInvalid("OTP code does not match this package.")
    if now >= otp.expires_at:
        raise OtpExpired("OTP code has expired.")
    if otp.consumed_at is not None:
        raise OtpAlreadyConsumed("OTP code was already used.")
    if otp.attempts >= otp.max_attempts:
        raise OtpAttemptsExceeded("Too many wrong OTP attempts; a new code must be issued.")

    # A closed package must not burn a valid code.
    ensure_transition(package.status, PackageStatus.RITIRATO)

    result = s.execute(
        update(PickupOtp)
        .where(PickupOtp.id == otp.id, PickupOtp.consumed_at.is_(None))
        .values(consumed_at=now, attempts=PickupOtp.attempts + 1)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        raise OtpAlreadyConsumed("OTP code was already used.")

    apply_transition(
        s,
        package,
        PackageStatus.RITIRATO,
        event_type=EVENT_OTP_CONFIRMED,
        actor_id=actor_id,
        now=now,
        payload={"otp_id": otp.id},
    )
    logger.info("Package %s picked up (otp_id=%s)", package.id, otp.id)

    if dispatcher is not None:
        try:
            notify_customer(s, package, "picked_up", dispatcher=dispatcher, actor_id=actor_id, now=now)
        except NotificationDeliveryError as e:
            logger.warning("Pickup confirmation message for package %s not delivered: %s", package.id, e)

    return {"status": package.status.value, "otp_id": otp.id, "package_id": package.id}
