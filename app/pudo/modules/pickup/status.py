"""
Package lifecycle: the closed set of statuses and the only transitions allowed between them.
"""
from __future__ import annotations

import enum

from .errors import InvalidTransitionError, ValidationError


class PackageStatus(str, enum.Enum):
    IN_GIACENZA = "in_giacenza"  # awaiting pickup
    IN_CORSO = "in_corso"  # being handled / problem flagged
    RITIRATO = "ritirato"  # picked up
    IN_GIACENZA_SCADUTO = "in_giacenza_scaduto"  # storage expired

    @property
    def label(self) -> str:
        return STATUS_LABELS[self]

    @property
    def is_terminal(self) -> bool:
        return not STATUS_TRANSITIONS[self]


STATUS_LABELS = {
    PackageStatus.IN_GIACENZA: "In Giacenza",
    PackageStatus.IN_CORSO: "In Corso",
    PackageStatus.RITIRATO: "Ritirato",
    PackageStatus.IN_GIACENZA_SCADUTO: "In Giacenza - Scaduto",
}

STATUS_TRANSITIONS: dict[PackageStatus, frozenset[PackageStatus]] = {
    PackageStatus.IN_GIACENZA: frozenset(
        {PackageStatus.IN_CORSO, PackageStatus.RITIRATO, PackageStatus.IN_GIACENZA_SCADUTO}
    ),
    PackageStatus.IN_CORSO: frozenset({PackageStatus.IN_GIACENZA, PackageStatus.RITIRATO}),
    PackageStatus.RITIRATO: frozenset(),
    # Reactivation is an administrative action outside this service.
    PackageStatus.IN_GIACENZA_SCADUTO: frozenset(),
}

INITIAL_STATUS = PackageStatus.IN_GIACENZA
ACTIVE_STATUSES = frozenset(st for st in PackageStatus if not st.is_terminal)


def can_transition(current: PackageStatus, target: PackageStatus) -> bool:
    return target in STATUS_TRANSITIONS[current]


def ensure_transition(current: PackageStatus, target: PackageStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(f"Cannot transition from '{current.value}' to '{target.value}'")


class ReportStatus(str, enum.Enum):
    REPORTED = "reported"
    CONFIRMED = "confirmed"
    ARRIVED = "arrived"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: str | ReportStatus) -> ReportStatus:
        if isinstance(value, cls):
            return value
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            allowed = ", ".join(st.value for st in cls)
            raise ValidationError(f"Invalid report status '{value}'. Must be one of: {allowed}") from None


REPORT_STATUS_LABELS = {
    ReportStatus.REPORTED: "Segnalato",
    ReportStatus.CONFIRMED: "Confermato",
    ReportStatus.ARRIVED: "Arrivato",
    ReportStatus.CANCELLED: "Annullato",
}
