from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Date, DateTime, Enum, ForeignKey, Index, Integer, String, Text, event, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.pudo.models import Base

from .status import ACTIVE_STATUSES, INITIAL_STATUS, PackageStatus, ReportStatus


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


ACTIVE_TRACKING_WHERE = "status IN ({})".format(", ".join(f"'{v}'" for v in sorted(st.value for st in ACTIVE_STATUSES)))


class PickupLocation(Base):
    __tablename__ = "pickup_locations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(150), nullable=False, unique=True)
    address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    contact_email: Mapped[str | None] = mapped_column(String(160), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class Courier(Base):
    __tablename__ = "pickup_couriers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    support_email: Mapped[str | None] = mapped_column(String(160), nullable=True)
    support_phone: Mapped[str | None] = mapped_column(String(40), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class Package(Base):
    __tablename__ = "pickup_packages"
    __table_args__ = (
        Index("idx_pickup_packages_tracking", "tracking"),
        # A tracking code may come back once the earlier package is closed.
        Index(
            "uq_pickup_packages_active_tracking",
            "tracking",
            unique=True,
            postgresql_where=text(ACTIVE_TRACKING_WHERE),
            sqlite_where=text(ACTIVE_TRACKING_WHERE),
        ),
        Index("idx_pickup_packages_status", "status"),
        Index("idx_pickup_packages_status_changed", "status", "status_changed_at"),
        Index("idx_pickup_packages_location", "pickup_location_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    # Required
    tracking: Mapped[str] = mapped_column(String(100), nullable=False)
    customer_name: Mapped[str] = mapped_column(String(150), nullable=False)
    customer_phone: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[PackageStatus] = mapped_column(
        Enum(PackageStatus, native_enum=False, length=32, values_callable=_enum_values, validate_strings=True),
        nullable=False,
        default=INITIAL_STATUS,
    )

    # Optional
    customer_email: Mapped[str | None] = mapped_column(String(160), nullable=True)
    courier_id: Mapped[int | None] = mapped_column(ForeignKey("pickup_couriers.id", ondelete="SET NULL"), nullable=True)
    pickup_location_id: Mapped[int | None] = mapped_column(
        ForeignKey("pickup_locations.id", ondelete="SET NULL"), nullable=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    status_changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("operators.id", ondelete="SET NULL"), nullable=True)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("operators.id", ondelete="SET NULL"), nullable=True)

    courier: Mapped[Courier | None] = relationship("Courier", lazy="joined")
    pickup_location: Mapped[PickupLocation | None] = relationship("PickupLocation", lazy="joined")
    otps: Mapped[list["PickupOtp"]] = relationship(
        "PickupOtp",
        back_populates="package",
        order_by="PickupOtp.id",
        lazy="selectin",
    )


class PickupOtp(Base):
    __tablename__ = "pickup_otps"
    __table_args__ = (
        Index("idx_pickup_otps_package", "package_id"),
        Index("idx_pickup_otps_expires", "expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    package_id: Mapped[int] = mapped_column(ForeignKey("pickup_packages.id", ondelete="CASCADE"), nullable=False)
    code_hash: Mapped[str] = mapped_column(String(255), nullable=False)  # werkzeug hash, never the code
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    channel: Mapped[str | None] = mapped_column(String(20), nullable=True)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("operators.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    package: Mapped[Package] = relationship("Package", back_populates="otps")


class PackageHistoryEvent(Base):
    """
    Append-only package ledger. Rows are never updated or deleted (see listeners below).
    """

    __tablename__ = "pickup_package_history"
    __table_args__ = (
        Index("idx_pickup_history_package", "package_id", "created_at", "id"),
        Index("idx_pickup_history_event", "event_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    package_id: Mapped[int] = mapped_column(ForeignKey("pickup_packages.id", ondelete="CASCADE"), nullable=False)
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)  # e.g. "otp_confirmed"
    previous_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    actor_user_id: Mapped[int | None] = mapped_column(ForeignKey("operators.id", ondelete="SET NULL"), nullable=True)
    payload_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


@event.listens_for(PackageHistoryEvent, "before_update")
def _refuse_history_update(mapper, connection, target):  # type: ignore[no-redef]
    raise RuntimeError("Package history events are append-only")


@event.listens_for(PackageHistoryEvent, "before_delete")
def _refuse_history_delete(mapper, connection, target):  # type: ignore[no-redef]
    raise RuntimeError("Package history events are append-only")


class PortalCustomer(Base):
    __tablename__ = "pickup_customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str | None] = mapped_column(String(160), nullable=True, unique=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    name: Mapped[str | None] = mapped_column(String(150), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class CustomerReport(Base):
    __tablename__ = "pickup_customer_reports"
    __table_args__ = (
        Index("idx_pickup_customer_reports_customer", "customer_id"),
        Index("idx_pickup_customer_reports_tracking", "tracking_code"),
        Index("idx_pickup_customer_reports_status", "status"),
        Index("idx_pickup_customer_reports_pickup", "pickup_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("pickup_customers.id", ondelete="CASCADE"), nullable=False)
    tracking_code: Mapped[str] = mapped_column(String(100), nullable=False)
    courier_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    expected_delivery_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    delivery_location: Mapped[str | None] = mapped_column(String(150), nullable=True)
    recipient_name: Mapped[str | None] = mapped_column(String(150), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[ReportStatus] = mapped_column(
        Enum(ReportStatus, native_enum=False, length=20, values_callable=_enum_values, validate_strings=True),
        nullable=False,
        default=ReportStatus.REPORTED,
    )
    pickup_id: Mapped[int | None] = mapped_column(ForeignKey("pickup_packages.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    customer: Mapped[PortalCustomer] = relationship("PortalCustomer", lazy="joined")
    package: Mapped[Package | None] = relationship("Package", lazy="joined")
