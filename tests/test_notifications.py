import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from models import db
from models.notification_preference import NotificationPreference
from models.pending_device import PendingDeviceConfirmation
from security import event_log
from security.bruteforce import record_failure
from security.devices import begin_confirmation
from security.errors import ValidationError
from security.event_log import EventType, Severity
from security.identity import register_account
from security.notifications import (
    NotificationDispatcher,
    get_preferences,
    notify,
    render_template,
    update_preferences,
)

from conftest import PASSWORD, RecordingSender


@pytest.fixture
def account_id(ctx):
    return register_account("citizen@example.com", PASSWORD).id


def test_defaults_are_all_on_and_not_stored(ctx, account_id):
    prefs = get_preferences(account_id)
    assert prefs.to_dict() == dict.fromkeys(NotificationPreference.FLAGS, True)
    assert NotificationPreference.query.count() == 0


def test_update_preferences(ctx, account_id):
    update_preferences(account_id, {"account_activity": False})
    assert get_preferences(account_id).account_activity is False
    assert get_preferences(account_id).security_alerts is True

    with pytest.raises(ValidationError):
        update_preferences(account_id, {"sms": True})
    with pytest.raises(ValidationError):
        update_preferences(account_id, {"security_alerts": "no"})


def test_new_device_notice_carries_the_confirmation(ctx, sender, account_id):
    pending = begin_confirmation(account_id, "f" * 64, user_agent="Firefox")
    _, kind, payload = sender.sent[-1]
    assert kind == "new_device_login"
    assert payload["recipient"] == "citizen@example.com"
    assert payload["expires_at"] == pending.expires_at.isoformat(timespec="seconds")

    subject, body = render_template(kind, payload)
    assert "confirm" in body.lower()
    assert "deny" in body.lower()


def test_specific_preference_suppresses_its_events(ctx, sender, account_id):
    update_preferences(account_id, {"new_device_logins": False})
    begin_confirmation(account_id, "f" * 64)
    assert sender.sent == []


def test_master_switch_silences_everything(ctx, sender, account_id):
    update_preferences(account_id, {"email_notifications": False})
    for _ in range(5):
        record_failure(account_id)
    begin_confirmation(account_id, "f" * 64)
    assert sender.sent == []


def test_login_events_never_notify(ctx, sender, account_id):
    event = event_log.append(EventType.LOGIN_SUCCESS, Severity.LOW, account_id=account_id)
    assert notify(event) == 0


def test_delivery_failure_does_not_undo_the_transition(ctx, sender, account_id):
    sender.fail = True
    pending = begin_confirmation(account_id, "f" * 64)
    assert db.session.get(PendingDeviceConfirmation, pending.id) is not None
    assert event_log.count(account_id=account_id, types=[EventType.NEW_DEVICE_LOGIN]) == 1


def test_crashing_collaborator_is_contained(ctx, account_id):
    class Exploding:
        def send(self, account_id, template_kind, payload):
            raise RuntimeError("boom")

    event = event_log.append(EventType.ACCOUNT_LOCKED, Severity.HIGH, account_id=account_id)
    assert NotificationDispatcher(Exploding()).dispatch(event) == 1


class GatedSender(RecordingSender):
    """Holds every delivery until the gate opens."""

    def __init__(self):
        super().__init__()
        self.gate = threading.Event()

    def send(self, account_id, template_kind, payload):
        self.gate.wait(timeout=10)
        return super().send(account_id, template_kind, payload)


def test_background_queue_is_bounded_and_drained_on_shutdown(ctx, account_id):
    gated = GatedSender()
    dispatcher = NotificationDispatcher(gated, executor=ThreadPoolExecutor(max_workers=1), queue_size=2)
    event = event_log.append(EventType.ACCOUNT_LOCKED, Severity.HIGH, account_id=account_id)

    assert [dispatcher.dispatch(event) for _ in range(3)] == [1, 1, 0]

    gated.gate.set()
    dispatcher.shutdown()
    assert gated.kinds() == ["account_locked", "account_locked"]
    # nothing is accepted once the pool is gone
    assert dispatcher.dispatch(event) == 0


def test_high_severity_alerts_the_security_desk(make_app, sender):
    app = make_app(SECURITY_ALERT_EMAIL="soc@example.com")
    with app.app_context():
        account_id = register_account("citizen@example.com", PASSWORD).id
        for _ in range(5):
            record_failure(account_id)

    alerts = [p for _, kind, p in sender.sent if kind == "admin_security_alert"]
    assert len(alerts) == 1
    assert alerts[0]["recipient"] == "soc@example.com"
    assert alerts[0]["event_type"] == "ACCOUNT_LOCKED"


def test_render_template_fills_gaps():
    subject, body = render_template("account_locked", {})
    assert "-" in body
    assert subject == "Your account has been temporarily locked"
