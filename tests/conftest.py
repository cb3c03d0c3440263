import os
import threading
from datetime import datetime, timedelta

import pytest

# cheap hashes for the test run; read when security.password is imported
os.environ.setdefault("BCRYPT_ROUNDS", "4")

from app import create_app
from models import db
from models.user import Role, User
from security.identity import register_account
from security.notifications import DeliveryError, DeliveryReceipt
from utils import clock as clock_module

PASSWORD = "correct horse battery"
BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)


class FrozenClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSender:
    """Delivery collaborator that keeps every message instead of sending it."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, account_id, template_kind, payload):
        if self.fail:
            raise DeliveryError("smtp down")
        self.sent.append((account_id, template_kind, dict(payload)))
        return DeliveryReceipt(template_kind, payload.get("recipient"), clock_module.utcnow())

    def kinds(self):
        return [kind for _, kind, _ in self.sent]


@pytest.fixture
def clock(monkeypatch):
    frozen = FrozenClock(datetime(2026, 3, 1, 12, 0, 0))
    monkeypatch.setattr(clock_module, "utcnow", frozen)
    return frozen


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def make_app(tmp_path, clock, sender):
    apps = []

    def _make(**overrides):
        config = {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / f'security-{len(apps)}.db'}",
            "AUTO_CREATE_TABLES": True,
            "NOTIFICATIONS_ASYNC": False,
            "LOG_LEVEL": "WARNING",
        }
        config.update(overrides)
        app = create_app(config, sender=sender)
        apps.append(app)
        return app

    yield _make

    for app in apps:
        with app.app_context():
            db.session.remove()
            db.drop_all()


@pytest.fixture
def app(make_app):
    return make_app()


@pytest.fixture
def ctx(app):
    """App context for tests that call the service layer directly."""
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


def create_account(app, email, password=PASSWORD, roles=()):
    with app.app_context():
        user = register_account(email, password)
        for name in roles:
            user.roles.append(Role.query.filter_by(name=name).one())
        db.session.commit()
        return user.id


def login(client, email, password=PASSWORD, user_agent=BROWSER_UA, fingerprint=None):
    body = {"email": email, "password": password}
    if fingerprint is not None:
        body["fingerprint"] = fingerprint
    return client.post("/login", json=body, headers={"User-Agent": user_agent})


def sign_in(client, email, password=PASSWORD, user_agent=BROWSER_UA):
    """Logs in from a new device, trusts it and returns the session token."""
    resp = login(client, email, password, user_agent=user_agent)
    if resp.status_code == 200:
        return resp.get_json()["session_token"]
    assert resp.status_code == 202, resp.get_json()
    pending_id = resp.get_json()["pending_confirmation_id"]
    confirmed = client.post(f"/devices/{pending_id}/confirm", json={"trust_device": True})
    assert confirmed.status_code == 200, confirmed.get_json()
    return confirmed.get_json()["session_token"]


def bearer(token):
    return {"Authorization": f"Bearer {token}", "User-Agent": BROWSER_UA}



def run_concurrently(app, fn, count=2):
    """
    Calls ``fn`` from ``count`` threads released together, each inside its
    own app context (and so its own database session). Returns the results
    and any exceptions raised.
    """
    barrier = threading.Barrier(count)
    results, errors = [], []

    def worker():
        with app.app_context():
            barrier.wait(timeout=10)
            try:
                results.append(fn())
            except Exception as exc:
                errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return results, errors
