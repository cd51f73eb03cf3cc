"""
Customer notifications for pickup events.

The dispatcher is a collaborator: this module renders the message, hands it to
whatever transport is configured and records the outcome in package history.
"""
from __future__ import annotations

import logging
import re
import smtplib
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from typing import Any, Protocol

from sqlalchemy.orm import Session

from .errors import NotificationDeliveryError, RecipientUnreachable
from .history import record_history
from .models import Package

logger = logging.getLogger(__name__)

EVENT_TEMPLATES: dict[str, dict[str, str]] = {
    "picked_up": {
        "subject": "Conferma ritiro pacco {{tracking}}",
        "body": (
            "Ciao {{customer_name}},\n"
            "abbiamo consegnato il pacco {{tracking}} presso {{location_name}}. "
            "Grazie per aver utilizzato il servizio Pickup!"
        ),
    },
    "storage_warning": {
        "subject": "Avviso giacenza pacco {{tracking}}",
        "body": (
            "Ciao {{customer_name}},\n"
            "il pacco {{tracking}} è in giacenza da {{days_in_storage}} giorni presso {{location_name}}. "
            "Ti chiediamo di passare entro {{expiration_date}}."
        ),
    },
    "storage_expired": {
        "subject": "Giacenza scaduta per il pacco {{tracking}}",
        "body": (
            "Ciao {{customer_name}},\n"
            "il pacco {{tracking}} ha superato il periodo massimo di giacenza e verrà gestito come da policy. "
            "Contatta il punto ritiro per maggiori informazioni."
        ),
    },
    "otp_generated": {
        "subject": "Codice OTP per ritiro pacco {{tracking}}",
        "body": (
            "Ciao {{customer_name}},\n"
            "codice OTP per ritirare il pacco {{tracking}}: {{otp}}. Valido fino al {{expiration_date}}."
        ),
    },
}

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([a-z_]+)\s*\}\}")


def render_template(template: str, data: dict[str, Any]) -> str:
    def _sub(match: re.Match) -> str:
        value = data.get(match.group(1))
        return "" if value is None else str(value)

    return _PLACEHOLDER_RE.sub(_sub, template)


def format_datetime_local(value: datetime | None) -> str:
    return value.strftime("%d/%m/%Y %H:%M") if value else ""


@dataclass(frozen=True)
class Recipient:
    name: str
    email: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class RenderedMessage:
    template: str
    subject: str
    body: str


class NotificationDispatcher(Protocol):
    """False on a failed delivery; RecipientUnreachable when the customer has no usable address."""

    def send(self, recipient: Recipient, message: RenderedMessage, context: dict[str, Any]) -> bool:
        ...


class LogDispatcher:
    """Development transport: writes the message to the log and reports success."""

    def send(self, recipient: Recipient, message: RenderedMessage, context: dict[str, Any]) -> bool:
        logger.info(
            "NOTIFY(log): template=%s to=%s subject=%s",
            message.template,
            recipient.email or recipient.phone or recipient.name,
            message.subject,
        )
        return True


@dataclass(frozen=True)
class SmtpEmailDispatcher:
    host: str
    port: int
    sender: str
    username: str = ""
    password: str = ""
    use_tls: bool = True
    timeout_seconds: int = 20

    def send(self, recipient: Recipient, message: RenderedMessage, context: dict[str, Any]) -> bool:
        if not recipient.email:
            raise RecipientUnreachable("Customer has no email address.")
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = recipient.email
        msg["Subject"] = message.subject
        msg.set_content(message.body)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout_seconds) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username:
                    smtp.login(self.username, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("SMTP delivery to %s failed: %s", recipient.email, e)
            return False
        return True


def dispatcher_from_config(config: dict) -> NotificationDispatcher:
    backend = (config.get("NOTIFY_BACKEND") or "log").strip().lower()
    if backend == "smtp":
        host = (config.get("SMTP_HOST") or "").strip()
        sender = (config.get("SMTP_FROM") or "").strip()
        if not host or not sender:
            raise ValueError("SMTP_HOST and SMTP_FROM are required when NOTIFY_BACKEND=smtp.")
        return SmtpEmailDispatcher(
            host=host,
            port=int(config.get("SMTP_PORT") or 587),
            sender=sender,
            username=(config.get("SMTP_USERNAME") or "").strip(),
            password=config.get("SMTP_PASSWORD") or "",
            use_tls=bool(config.get("SMTP_USE_TLS", True)),
        )
    return LogDispatcher()


def build_message(package: Package, template: str, context: dict[str, Any]) -> RenderedMessage:
    tpl = EVENT_TEMPLATES.get(template)
    if tpl is None:
        raise ValueError(f"Unsupported notification template: {template}")
    location = package.pickup_location
    data: dict[str, Any] = {
        "customer_name": package.customer_name or "Cliente",
        "tracking": package.tracking,
        "location_name": location.name if location else "il punto ritiro",
        "location_address": location.address if location else "",
    }
    data.update(context)
    return RenderedMessage(
        template=template,
        subject=render_template(tpl["subject"], data),
        body=render_template(tpl["body"], data),
    )


def notify_customer(
    s: Session,
    package: Package,
    template: str,
    *,
    dispatcher: NotificationDispatcher,
    context: dict[str, Any] | None = None,
    actor_id: int | None = None,
    now: datetime | None = None,
) -> None:
    """
    Send one message and record it as "notify_<template>".
    On failure records "notify_<template>_failed" and raises NotificationDeliveryError;
    the failure event is flushed before raising so callers may keep it. A customer the
    transport cannot address is recorded as "notify_<template>_unreachable" and raises
    RecipientUnreachable.
    """
    context = dict(context or {})
    now = now or datetime.utcnow()
    recipient = Recipient(name=package.customer_name, email=package.customer_email, phone=package.customer_phone)
    message = build_message(package, template, context)
    # Never persist the OTP itself.
    logged_context = {k: v for k, v in context.items() if k != "otp"}

    error: str | None = None
    try:
        delivered = dispatcher.send(recipient, message, context)
        if not delivered:
            error = "dispatcher reported failure"
    except RecipientUnreachable as e:
        record_history(
            s,
            package_id=package.id,
            event_type=f"notify_{template}_unreachable",
            actor_id=actor_id,
            payload={"subject": message.subject, "error": str(e), "context": logged_context},
            at=now,
        )
        raise RecipientUnreachable(f"Cannot deliver '{template}' for package {package.id}: {e}") from None
    except Exception as e:
        logger.exception("Notification %s for package %s raised", template, package.id)
        error = f"{type(e).__name__}: {e}"

    if error is None:
        record_history(
            s,
            package_id=package.id,
            event_type=f"notify_{template}",
            actor_id=actor_id,
            payload={"subject": message.subject, "context": logged_context},
            at=now,
        )
        return

    record_history(
        s,
        package_id=package.id,
        event_type=f"notify_{template}_failed",
        actor_id=actor_id,
        payload={"subject": message.subject, "error": error, "context": logged_context},
        at=now,
    )
    raise NotificationDeliveryError(f"Could not deliver '{template}' for package {package.id}: {error}")
