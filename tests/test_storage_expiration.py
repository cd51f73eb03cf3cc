"""Tests for the storage expiration sweep and its cron entry point."""
import smtplib
from datetime import datetime, timedelta

import pytest

from app.pudo import create_app
from app.pudo.db import session_scope
from app.pudo.models import Base
from app.pudo.modules.pickup import expiration
from app.pudo.modules.pickup.expiration import check_storage_expiration
from app.pudo.modules.pickup.history import list_history
from app.pudo.modules.pickup.models import Package
from app.pudo.modules.pickup.notifications import SmtpEmailDispatcher
from app.pudo.modules.pickup.service import add_package, flag_package_issue, resolve_package_issue
from app.pudo.modules.pickup.status import PackageStatus

NOW = datetime(2026, 7, 20, 6, 0)


class RecordingDispatcher:
    def __init__(self, ok: bool = True):
        self.ok = ok
        self.sent = []

    def send(self, recipient, message, context):
        self.sent.append((recipient.name, message.template, dict(context)))
        return self.ok


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("NOTIFY_BACKEND", "log")
    monkeypatch.delenv("PICKUP_STORAGE_GRACE_DAYS", raising=False)
    monkeypatch.delenv("PICKUP_STORAGE_WARNING_DAYS", raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    return app


def _stored(app, tracking: str, days_ago: float) -> int:
    with session_scope(app) as s:
        return add_package(
            s,
            {"tracking": tracking, "customer_name": f"Cliente {tracking}", "customer_phone": "081000000"},
            now=NOW - timedelta(days=days_ago),
        )


def _events(app, pid):
    with session_scope(app) as s:
        return [e.event_type for e in list_history(s, pid)]


def _status(app, pid):
    with session_scope(app) as s:
        return s.get(Package, pid).status


def test_sweep_warns_and_expires(app):
    a = _stored(app, "A", 2)
    b = _stored(app, "B", 5)
    fresh = _stored(app, "C", 1)
    dispatcher = RecordingDispatcher()

    with session_scope(app) as s:
        summary = check_storage_expiration(s, 3, warning_days=1, now=NOW, dispatcher=dispatcher)

    assert summary == {"processed": 2, "warned": 1, "expired": 1, "failed": 0, "unreachable": 0, "warning_days": 1}
    assert _status(app, a) == PackageStatus.IN_GIACENZA
    assert _status(app, b) == PackageStatus.IN_GIACENZA_SCADUTO
    assert _status(app, fresh) == PackageStatus.IN_GIACENZA
    assert _events(app, a) == ["created", "notify_storage_warning"]
    assert _events(app, b) == ["created", "status_expired", "notify_storage_expired"]
    assert _events(app, fresh) == ["created"]

    by_template = {t: ctx for _, t, ctx in dispatcher.sent}
    assert by_template["storage_warning"]["days_in_storage"] == 2
    assert by_template["storage_warning"]["expiration_date"] == "21/07/2026 06:00"


def test_warning_is_not_repeated_in_same_storage_period(app):
    a = _stored(app, "A", 2)
    dispatcher = RecordingDispatcher()

    with session_scope(app) as s:
        first = check_storage_expiration(s, 3, warning_days=1, now=NOW, dispatcher=dispatcher)
    with session_scope(app) as s:
        second = check_storage_expiration(s, 3, warning_days=1, now=NOW + timedelta(hours=6), dispatcher=dispatcher)

    assert first["warned"] == 1
    assert second["processed"] == 1
    assert second["warned"] == 0
    assert _events(app, a).count("notify_storage_warning") == 1
    assert len(dispatcher.sent) == 1


def test_warning_is_sent_again_after_a_new_storage_period(app):
    a = _stored(app, "A", 2)
    dispatcher = RecordingDispatcher()

    with session_scope(app) as s:
        assert check_storage_expiration(s, 3, warning_days=1, now=NOW, dispatcher=dispatcher)["warned"] == 1
    with session_scope(app) as s:
        flag_package_issue(s, a, reason="Cliente al telefono", now=NOW + timedelta(hours=1))
        resolve_package_issue(s, a, now=NOW + timedelta(hours=2))

    with session_scope(app) as s:
        early = check_storage_expiration(s, 3, warning_days=1, now=NOW + timedelta(days=1), dispatcher=dispatcher)
    assert early["processed"] == 0

    with session_scope(app) as s:
        again = check_storage_expiration(
            s, 3, warning_days=1, now=NOW + timedelta(days=2, hours=2), dispatcher=dispatcher
        )
    assert again["warned"] == 1
    assert _events(app, a).count("notify_storage_warning") == 2
    assert [t for _, t, _ in dispatcher.sent] == ["storage_warning", "storage_warning"]


def test_customer_without_email_is_reported_once_per_period(app, monkeypatch):
    a = _stored(app, "A", 2)
    dispatcher = SmtpEmailDispatcher(host="mail.example", port=587, sender="pickup@example.com")
    monkeypatch.setattr(smtplib, "SMTP", lambda *args, **kwargs: pytest.fail("no SMTP session expected"))

    runs = []
    for hour in range(5):
        with session_scope(app) as s:
            runs.append(
                check_storage_expiration(s, 3, warning_days=1, now=NOW + timedelta(hours=hour), dispatcher=dispatcher)
            )

    assert [r["unreachable"] for r in runs] == [1, 0, 0, 0, 0]
    assert [r["failed"] for r in runs] == [0, 0, 0, 0, 0]
    assert _events(app, a) == ["created", "notify_storage_warning_unreachable"]
    assert _status(app, a) == PackageStatus.IN_GIACENZA


def test_failed_warning_is_recorded_and_retried(app):
    a = _stored(app, "A", 2)

    with session_scope(app) as s:
        summary = check_storage_expiration(s, 3, warning_days=1, now=NOW, dispatcher=RecordingDispatcher(ok=False))
    assert summary["warned"] == 0
    assert summary["failed"] == 1
    assert _events(app, a) == ["created", "notify_storage_warning_failed"]

    with session_scope(app) as s:
        summary = check_storage_expiration(s, 3, warning_days=1, now=NOW + timedelta(hours=1), dispatcher=RecordingDispatcher())
    assert summary["warned"] == 1
    assert _events(app, a)[-1] == "notify_storage_warning"


def test_unexpected_error_rolls_back_one_package_only(app, monkeypatch):
    a = _stored(app, "A", 2)
    b = _stored(app, "B", 5)
    c = _stored(app, "C", 6)

    real_apply = expiration.apply_transition

    def _flaky_apply(s, package, target, **kwargs):
        if package.tracking == "B":
            raise RuntimeError("disk full")
        return real_apply(s, package, target, **kwargs)

    monkeypatch.setattr(expiration, "apply_transition", _flaky_apply)

    with session_scope(app) as s:
        summary = check_storage_expiration(s, 3, warning_days=1, now=NOW, dispatcher=RecordingDispatcher())

    assert summary == {"processed": 3, "warned": 1, "expired": 1, "failed": 1, "unreachable": 0, "warning_days": 1}
    assert _status(app, b) == PackageStatus.IN_GIACENZA
    assert _events(app, b) == ["created"]
    assert _status(app, c) == PackageStatus.IN_GIACENZA_SCADUTO
    assert _events(app, a) == ["created", "notify_storage_warning"]


def test_flagged_packages_are_not_swept(app):
    pid = _stored(app, "A", 10)
    with session_scope(app) as s:
        flag_package_issue(s, pid, reason="In verifica", now=NOW - timedelta(days=9))
        summary = check_storage_expiration(s, 3, warning_days=1, now=NOW, dispatcher=RecordingDispatcher())
    assert summary["processed"] == 0
    assert _status(app, pid) == PackageStatus.IN_CORSO


def test_days_fall_back_and_clamp(app):
    old = _stored(app, "OLD", 16)
    mid = _stored(app, "MID", 13)

    with session_scope(app) as s:
        summary = check_storage_expiration(s, 0, now=NOW, dispatcher=RecordingDispatcher())
    # 15 days grace, warning 3 days before
    assert summary == {"processed": 2, "warned": 1, "expired": 1, "failed": 0, "unreachable": 0, "warning_days": 3}
    assert _status(app, old) == PackageStatus.IN_GIACENZA_SCADUTO
    assert _status(app, mid) == PackageStatus.IN_GIACENZA

    with session_scope(app) as s:
        summary = check_storage_expiration(s, 3, warning_days=10, now=NOW, dispatcher=RecordingDispatcher())
    assert summary["warning_days"] == 3

    with session_scope(app) as s:
        summary = check_storage_expiration(s, 3, warning_days=-4, now=NOW, dispatcher=RecordingDispatcher())
    assert summary["warning_days"] == 0


def test_cli_prints_summary(app, tmp_path, monkeypatch, capsys):
    from scripts.pickup_storage_check import run

    _stored(app, "A", 2)
    _stored(app, "B", 5)

    rc = run(["3", "1"], now=NOW)
    out = capsys.readouterr().out
    assert rc == 0
    assert "processati=2" in out
    assert "avvisati=1" in out
    assert "scaduti=1" in out
    assert "senza_recapito=0" in out


def test_cli_reports_failure(tmp_path, monkeypatch, capsys):
    from scripts.pickup_storage_check import run

    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'empty.db'}")
    monkeypatch.setenv("NOTIFY_BACKEND", "log")
    rc = run([], now=NOW)
    assert rc == 1
    assert "Errore durante il controllo giacenze" in capsys.readouterr().err
