"""Tests for package intake, read projections and the status lifecycle."""
from datetime import datetime, timedelta

import pytest

from app.pudo import create_app
from app.pudo.db import session_scope
from app.pudo.models import Base, Operator
from app.pudo.modules.pickup.errors import (
    DuplicateTrackingError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from app.pudo.modules.pickup.history import list_history
from app.pudo.modules.pickup.models import Courier, Package, PackageHistoryEvent, PickupLocation
from app.pudo.modules.pickup.otp import confirm_pickup_with_otp, generate_pickup_otp
from app.pudo.modules.pickup.service import (
    add_package,
    clean_input,
    find_active_package_by_tracking,
    flag_package_issue,
    get_package_details,
    get_package_history,
    list_packages,
    resolve_package_issue,
)
from app.pudo.modules.pickup.status import (
    ACTIVE_STATUSES,
    PackageStatus,
    ReportStatus,
    can_transition,
    ensure_transition,
)

T0 = datetime(2026, 3, 2, 9, 30)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("NOTIFY_BACKEND", "log")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        s.add(Operator(email="op@example.com", name="Operatore", is_active=True))
        s.add(PickupLocation(name="AG SERVIZI VIA PLINIO 72", address="VIA PLINIO IL VECCHIO 72"))
        s.add(Courier(name="GLS Italy"))
    return app


def _ids(app):
    with session_scope(app) as s:
        op = s.query(Operator).one()
        loc = s.query(PickupLocation).one()
        courier = s.query(Courier).one()
        return op.id, loc.id, courier.id


def _payload(**overrides):
    data = {
        "tracking": "TRK-1001",
        "customer_name": "Mario Rossi",
        "customer_phone": "+39 333 1234567",
        "customer_email": "Mario.Rossi@Example.com",
    }
    data.update(overrides)
    return data


class TestStatusTable:
    def test_waiting_package_can_go_anywhere_allowed(self):
        assert can_transition(PackageStatus.IN_GIACENZA, PackageStatus.IN_CORSO)
        assert can_transition(PackageStatus.IN_GIACENZA, PackageStatus.RITIRATO)
        assert can_transition(PackageStatus.IN_GIACENZA, PackageStatus.IN_GIACENZA_SCADUTO)

    def test_in_corso_cannot_expire(self):
        assert not can_transition(PackageStatus.IN_CORSO, PackageStatus.IN_GIACENZA_SCADUTO)
        assert can_transition(PackageStatus.IN_CORSO, PackageStatus.IN_GIACENZA)

    def test_terminal_statuses_have_no_exit(self):
        for st in (PackageStatus.RITIRATO, PackageStatus.IN_GIACENZA_SCADUTO):
            assert st.is_terminal
            for target in PackageStatus:
                assert not can_transition(st, target)
        assert ACTIVE_STATUSES == {PackageStatus.IN_GIACENZA, PackageStatus.IN_CORSO}

    def test_ensure_transition_raises(self):
        with pytest.raises(InvalidTransitionError):
            ensure_transition(PackageStatus.RITIRATO, PackageStatus.IN_GIACENZA)

    def test_report_status_parse(self):
        assert ReportStatus.parse(" Confirmed ") is ReportStatus.CONFIRMED
        with pytest.raises(ValidationError):
            ReportStatus.parse("lost")


def test_clean_input_normalizes():
    assert clean_input("  TRK\t\n 1  ") == "TRK 1"
    assert clean_input(None) == ""
    assert clean_input("x" * 300, 10) == "x" * 10


def test_add_package_starts_waiting_with_one_created_event(app):
    op_id, loc_id, courier_id = _ids(app)
    with session_scope(app) as s:
        pid = add_package(
            s, _payload(courier_id=courier_id, pickup_location_id=loc_id), actor_id=op_id, now=T0
        )

    with session_scope(app) as s:
        p = s.get(Package, pid)
        assert p.status == PackageStatus.IN_GIACENZA
        assert p.customer_email == "mario.rossi@example.com"
        assert p.status_changed_at == T0
        events = list_history(s, pid)
        assert [e.event_type for e in events] == ["created"]
        assert events[0].new_status == "in_giacenza"
        assert events[0].actor_user_id == op_id


def test_add_package_validation(app):
    with session_scope(app) as s:
        with pytest.raises(ValidationError) as exc:
            add_package(s, {"tracking": " ", "customer_name": "", "customer_phone": ""}, now=T0)
        msg = str(exc.value)
        assert "Tracking code is required" in msg
        assert "Customer phone is required" in msg

        with pytest.raises(ValidationError):
            add_package(s, _payload(customer_email="not-an-email"), now=T0)
        with pytest.raises(ValidationError):
            add_package(s, _payload(pickup_location_id=999), now=T0)
        with pytest.raises(ValidationError):
            add_package(s, _payload(courier_id="abc"), now=T0)
        with pytest.raises(ValidationError):
            add_package(s, _payload(status="ritirato"), now=T0)
        assert s.query(Package).count() == 0


def test_duplicate_tracking_rejected_only_while_active(app):
    with session_scope(app) as s:
        pid = add_package(s, _payload(), now=T0)
        with pytest.raises(DuplicateTrackingError):
            add_package(s, _payload(customer_name="Altro Cliente"), now=T0)

    with session_scope(app) as s:
        otp = generate_pickup_otp(s, pid, now=T0)
        confirm_pickup_with_otp(s, pid, otp["code"], now=T0 + timedelta(minutes=5))

    with session_scope(app) as s:
        assert find_active_package_by_tracking(s, "TRK-1001") is None
        new_id = add_package(s, _payload(), now=T0 + timedelta(days=1))
        assert new_id != pid
        assert find_active_package_by_tracking(s, " TRK-1001 ").id == new_id


def test_concurrent_intake_is_stopped_by_unique_index(app, monkeypatch):
    from app.pudo.modules.pickup import service

    with session_scope(app) as s:
        add_package(s, _payload(), now=T0)

    real_lookup = service.find_active_package_by_tracking
    calls = []

    def stale_lookup(s, tracking):
        # First lookup runs before the other intake is visible.
        calls.append(tracking)
        return None if len(calls) == 1 else real_lookup(s, tracking)

    monkeypatch.setattr(service, "find_active_package_by_tracking", stale_lookup)
    with session_scope(app) as s:
        with pytest.raises(DuplicateTrackingError):
            add_package(s, _payload(customer_name="Altro Cliente"), now=T0)
        assert len(calls) == 2
        assert s.query(Package).filter(Package.tracking == "TRK-1001").count() == 1


def test_package_details_and_not_found(app):
    _, loc_id, courier_id = _ids(app)
    with session_scope(app) as s:
        pid = add_package(s, _payload(courier_id=courier_id, pickup_location_id=loc_id, notes="Fragile"), now=T0)

    with session_scope(app) as s:
        d = get_package_details(s, pid)
        assert d["tracking"] == "TRK-1001"
        assert d["status"] == "in_giacenza"
        assert d["status_label"] == "In Giacenza"
        assert d["courier_name"] == "GLS Italy"
        assert d["location_name"] == "AG SERVIZI VIA PLINIO 72"
        assert d["notes"] == "Fragile"

        with pytest.raises(NotFoundError):
            get_package_details(s, 12345)
        with pytest.raises(NotFoundError):
            get_package_history(s, 12345)


def test_list_packages_filters(app):
    with session_scope(app) as s:
        add_package(s, _payload(tracking="AAA111", customer_name="Giulia Bianchi"), now=T0)
        pid = add_package(s, _payload(tracking="BBB222", customer_name="Luca Verdi"), now=T0 + timedelta(hours=1))
        flag_package_issue(s, pid, reason="Imballo danneggiato", now=T0 + timedelta(hours=2))

    with session_scope(app) as s:
        assert [p["tracking"] for p in list_packages(s)] == ["BBB222", "AAA111"]
        assert [p["tracking"] for p in list_packages(s, status="in_corso")] == ["BBB222"]
        assert [p["tracking"] for p in list_packages(s, search="bianchi")] == ["AAA111"]
        with pytest.raises(ValidationError):
            list_packages(s, status="smarrito")


def test_flag_and_resolve_issue(app):
    op_id, _, _ = _ids(app)
    with session_scope(app) as s:
        pid = add_package(s, _payload(), now=T0)

    with session_scope(app) as s:
        with pytest.raises(InvalidTransitionError):
            resolve_package_issue(s, pid, actor_id=op_id, now=T0 + timedelta(hours=1))
        with pytest.raises(ValidationError):
            flag_package_issue(s, pid, reason="   ", actor_id=op_id)

    with session_scope(app) as s:
        d = flag_package_issue(s, pid, reason="Cliente irreperibile", actor_id=op_id, now=T0 + timedelta(hours=1))
        assert d["status"] == "in_corso"

    resolved_at = T0 + timedelta(days=2)
    with session_scope(app) as s:
        d = resolve_package_issue(s, pid, actor_id=op_id, now=resolved_at, note="Contattato")
        assert d["status"] == "in_giacenza"

    with session_scope(app) as s:
        assert s.get(Package, pid).status_changed_at == resolved_at
        history = get_package_history(s, pid)
        assert [h["event_type"] for h in history] == ["created", "status_change", "status_change"]
        assert history[1]["previous_status"] == "in_giacenza"
        assert history[1]["new_status"] == "in_corso"
        assert history[1]["payload"] == {"reason": "Cliente irreperibile"}
        assert history[2]["new_status"] == "in_giacenza"


def test_history_rows_are_append_only(app):
    with session_scope(app) as s:
        pid = add_package(s, _payload(), now=T0)

    s = app.extensions["sqlalchemy_sessionmaker"]()
    try:
        ev = s.query(PackageHistoryEvent).filter(PackageHistoryEvent.package_id == pid).one()
        ev.event_type = "tampered"
        with pytest.raises(RuntimeError):
            s.flush()
        s.rollback()

        ev = s.query(PackageHistoryEvent).filter(PackageHistoryEvent.package_id == pid).one()
        s.delete(ev)
        with pytest.raises(RuntimeError):
            s.flush()
        s.rollback()
    finally:
        s.close()

    with session_scope(app) as s:
        assert [e.event_type for e in list_history(s, pid)] == ["created"]
