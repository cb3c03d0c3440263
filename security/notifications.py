"""
Notification dispatch for security events.

The dispatcher only decides *whether* and *whom* to notify. Delivery is
handed to a collaborator with a ``send(account_id, template_kind, payload)``
method (see ``utils.emailer.SmtpSender``) and runs after the state
transition that produced the event has committed. Delivery problems are
logged and never reach the caller.
"""
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime

import structlog
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.notification_preference import NotificationPreference
from models.user import User
from security.errors import ValidationError
from security.event_log import EventType, Severity

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DeliveryReceipt:
    template_kind: str
    recipient: str
    delivered_at: datetime


class DeliveryError(Exception):
    pass


# preference flag that gates each notifiable event type
PREFERENCE_BY_TYPE = {
    EventType.NEW_DEVICE_LOGIN: "new_device_logins",
    EventType.ACCOUNT_LOCKED: "security_alerts",
    EventType.SUSPICIOUS_ACTIVITY: "security_alerts",
    EventType.DEVICE_DENIED: "security_alerts",
    EventType.DEVICE_REVOKED: "security_alerts",
    EventType.ACCOUNT_UNLOCKED: "account_activity",
    EventType.DEVICE_CONFIRMED: "account_activity",
    EventType.DATA_EXPORT_REQUESTED: "account_activity",
}

TEMPLATE_BY_TYPE = {
    EventType.NEW_DEVICE_LOGIN: "new_device_login",
    EventType.ACCOUNT_LOCKED: "account_locked",
    EventType.SUSPICIOUS_ACTIVITY: "suspicious_activity",
    EventType.DEVICE_DENIED: "device_denied",
    EventType.DEVICE_REVOKED: "device_revoked",
    EventType.ACCOUNT_UNLOCKED: "account_unlocked",
    EventType.DEVICE_CONFIRMED: "device_confirmed",
    EventType.DATA_EXPORT_REQUESTED: "data_export",
}

ADMIN_ALERT_SEVERITIES = {Severity.HIGH.value, Severity.CRITICAL.value}

TEMPLATES = {
    "new_device_login": (
        "New sign-in to your Nagar Sewak account",
        "Someone signed in to your account from a device we do not recognise "
        "({browser} on {operating_system}) at {timestamp} UTC.\n\n"
        "If this was you, confirm the device: {confirmation_url}\n"
        "If it was not you, deny the sign-in from the same page and change your password. "
        "The request expires at {expires_at} UTC.",
    ),
    "account_locked": (
        "Your account has been temporarily locked",
        "We locked your account after several failed sign-in attempts.\n\n"
        "You can sign in again after {locked_until} UTC. "
        "If these attempts were not yours, change your password once the lock ends.",
    ),
    "suspicious_activity": (
        "Suspicious activity on your account",
        "We noticed unusual activity on your account at {timestamp} UTC ({reason}).\n\n"
        "Review your devices and change your password if you do not recognise it.",
    ),
    "device_denied": (
        "A sign-in to your account was blocked",
        "A sign-in from an unrecognised device was denied at {timestamp} UTC and its sessions were ended.\n\n"
        "If you denied it yourself, consider changing your password.",
    ),
    "device_revoked": (
        "A device was removed from your account",
        "A trusted device was removed from your account at {timestamp} UTC and signed out.\n\n"
        "If you did not do this, change your password.",
    ),
    "account_unlocked": (
        "Your account is unlocked",
        "The temporary lock on your account has ended and you signed in at {timestamp} UTC.",
    ),
    "device_confirmed": (
        "New device confirmed",
        "You confirmed a new device at {timestamp} UTC. "
        "You can remove it at any time from your security settings.",
    ),
    "data_export": (
        "Your data export is ready",
        "A copy of your account data was exported at {timestamp} UTC. "
        "If you did not request it, change your password.",
    ),
    "admin_security_alert": (
        "[Security] {event_type} ({severity})",
        "Security event {event_id} of type {event_type} with severity {severity} "
        "was recorded for account {account_id} at {timestamp} UTC.\n\n"
        "Review it on the security dashboard.",
    ),
}


class _Blank(dict):
    def __missing__(self, key):
        return "-"


def render_template(template_kind: str, payload: dict):
    try:
        subject, body = TEMPLATES[template_kind]
    except KeyError:
        raise DeliveryError(f"Unknown template {template_kind}")
    values = _Blank(payload)
    return subject.format_map(values), body.format_map(values)


class NotificationDispatcher:
    def __init__(self, sender, executor=None, alert_email=None, queue_size=100):
        self.sender = sender
        self.executor = executor
        self.alert_email = alert_email
        # messages waiting for or in delivery; a full queue drops new ones
        self._slots = threading.BoundedSemaphore(queue_size)

    def dispatch(self, event, context=None) -> int:
        """
        Hands the notifications ``event`` calls for to the delivery
        collaborator. Returns how many messages were accepted.
        """
        try:
            messages = self._messages_for(event, context or {})
        except SQLAlchemyError as exc:
            logger.error("notification_lookup_failed", event_id=event.id, error=str(exc))
            return 0

        return sum(self._submit(*message) for message in messages)

    def _messages_for(self, event, context):
        event_type = EventType(event.event_type)
        base = {
            "event_id": event.id,
            "event_type": event.event_type,
            "severity": event.severity,
            "account_id": event.account_id,
            "timestamp": event.timestamp.isoformat(timespec="seconds"),
        }
        base.update(event.details)
        base.update(context)

        messages = []
        flag = PREFERENCE_BY_TYPE.get(event_type)
        if flag and event.account_id is not None:
            account = db.session.get(User, event.account_id)
            if account is not None and not account.is_deleted:
                prefs = get_preferences(event.account_id)
                if prefs.email_notifications and getattr(prefs, flag):
                    payload = dict(base, recipient=account.email)
                    messages.append((event.account_id, TEMPLATE_BY_TYPE[event_type], payload))
                else:
                    logger.info(
                        "notification_suppressed",
                        event_id=event.id,
                        account_id=event.account_id,
                        preference=flag,
                    )

        if self.alert_email and event.severity in ADMIN_ALERT_SEVERITIES:
            messages.append((event.account_id, "admin_security_alert", dict(base, recipient=self.alert_email)))
        return messages

    def _submit(self, account_id, template_kind, payload) -> bool:
        if self.executor is None:
            self._deliver(account_id, template_kind, payload)
            return True
        if not self._slots.acquire(blocking=False):
            logger.warning("notification_dropped", account_id=account_id, template=template_kind, reason="queue_full")
            return False
        try:
            future = self.executor.submit(self._deliver, account_id, template_kind, payload)
        except RuntimeError:
            # executor already shut down at exit
            self._slots.release()
            logger.warning("notification_dropped", account_id=account_id, template=template_kind, reason="shutdown")
            return False
        future.add_done_callback(lambda _: self._slots.release())
        return True

    def _deliver(self, account_id, template_kind, payload):
        try:
            self.sender.send(account_id, template_kind, payload)
        except DeliveryError as exc:
            logger.warning(
                "notification_delivery_failed",
                account_id=account_id,
                template=template_kind,
                error=str(exc),
            )
        except Exception:
            # a broken collaborator must not take the worker down with it
            logger.exception("notification_delivery_crashed", account_id=account_id, template=template_kind)

    def shutdown(self):
        """Stops taking messages and waits for the queued ones to go out."""
        if self.executor is not None:
            self.executor.shutdown(wait=True)
            logger.info("notification_queue_drained")


def init_notifications(app, sender):
    executor = None
    if app.config.get("NOTIFICATIONS_ASYNC", True):
        executor = ThreadPoolExecutor(
            max_workers=app.config.get("NOTIFICATION_WORKERS", 4),
            thread_name_prefix="notify",
        )
    dispatcher = NotificationDispatcher(
        sender,
        executor=executor,
        alert_email=app.config.get("SECURITY_ALERT_EMAIL"),
        queue_size=app.config.get("NOTIFICATION_QUEUE_SIZE", 100),
    )
    app.extensions["notification_dispatcher"] = dispatcher
    return dispatcher


def notify(event, **context) -> int:
    return current_app.extensions["notification_dispatcher"].dispatch(event, context)


def get_preferences(account_id) -> NotificationPreference:
    """Stored preferences, or an unsaved all-true default set."""
    prefs = NotificationPreference.query.filter_by(account_id=account_id).first()
    if prefs is None:
        prefs = NotificationPreference(account_id=account_id)
        for flag in NotificationPreference.FLAGS:
            setattr(prefs, flag, True)
    return prefs


def update_preferences(account_id, changes: dict) -> NotificationPreference:
    unknown = set(changes) - set(NotificationPreference.FLAGS)
    if unknown:
        raise ValidationError(f"Unknown preferences: {', '.join(sorted(unknown))}")
    for flag, value in changes.items():
        if not isinstance(value, bool):
            raise ValidationError(f"{flag} must be true or false")

    prefs = get_preferences(account_id)
    if prefs.id is None:
        db.session.add(prefs)
    for flag, value in changes.items():
        setattr(prefs, flag, value)
    db.session.commit()
    return prefs
