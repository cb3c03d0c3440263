import json

import pytest

from models import db
from models.complaint import Complaint, ComplaintComment
from models.device import DeviceRecord
from models.login_attempt import LoginAttemptState
from models.security_event import SecurityEvent
from models.session import Session
from models.user import User
from security import event_log
from security.bruteforce import record_failure
from security.compliance import compliance_report, delete_account, export_account_data
from security.devices import begin_confirmation, confirm
from security.errors import NotFoundError, PolicyViolation
from security.event_log import EventType, Severity
from security.identity import find_account_id, register_account
from security.metrics import metrics, parse_range
from security.retention import RetentionPolicy, current_policy
from security.session import create_session

from conftest import PASSWORD


@pytest.fixture
def accounts(ctx):
    a = register_account("alice@example.com", PASSWORD, full_name="Alice").id
    b = register_account("bob@example.com", PASSWORD, full_name="Bob").id
    return a, b


@pytest.fixture
def complaints(accounts):
    a, b = accounts
    own = Complaint(account_id=a, title="Streetlight out", description="Ward 4, pole 17")
    others = Complaint(account_id=b, title="Pothole", description="Main road")
    db.session.add_all([own, others])
    db.session.flush()
    db.session.add_all([
        ComplaintComment(complaint_id=own.id, author_id=a, body="Still broken"),
        ComplaintComment(complaint_id=own.id, author_id=b, body="Bob's private remark"),
        ComplaintComment(complaint_id=others.id, author_id=a, body="Same on my street"),
    ])
    db.session.commit()
    return own.id, others.id


def test_export_contains_only_the_subjects_data(accounts, complaints, sender):
    a, b = accounts
    event_log.append(EventType.LOGIN_SUCCESS, Severity.LOW, account_id=a)
    event_log.append(EventType.LOGIN_SUCCESS, Severity.LOW, account_id=b)
    confirm(begin_confirmation(a, "f" * 64).id, trust_device=True)

    bundle = export_account_data(a)

    assert set(bundle) == {"profile", "complaintsSummary", "securityEvents", "preferences", "devices", "exportInfo"}
    assert bundle["profile"]["email"] == "alice@example.com"
    summary = bundle["complaintsSummary"]
    assert summary["total"] == 1
    assert summary["complaints"][0]["commentsByOthers"] == 1
    assert [c["body"] for c in summary["complaints"][0]["comments"]] == ["Still broken"]
    assert [c["body"] for c in summary["commentsOnOtherComplaints"]] == ["Same on my street"]
    assert len(bundle["devices"]) == 1

    dumped = json.dumps(bundle)
    assert "Bob's private remark" not in dumped
    assert "bob@example.com" not in dumped
    assert "Pothole" not in dumped

    # the export itself is logged, after the bundle was built
    assert not any(e["type"] == "DATA_EXPORT_REQUESTED" for e in bundle["securityEvents"])
    assert event_log.count(account_id=a, types=[EventType.DATA_EXPORT_REQUESTED]) == 1
    assert "data_export" in sender.kinds()


def test_export_of_a_missing_account(ctx):
    with pytest.raises(NotFoundError):
        export_account_data(999)


def test_delete_with_preserved_records_keeps_metrics(accounts, complaints, clock):
    a, b = accounts
    event_log.append(EventType.LOGIN_SUCCESS, Severity.LOW, account_id=a, origin_ip="203.0.113.5",
                     details={"fingerprint": "abc", "consecutive_failures": 0})
    event_log.append(EventType.LOGIN_SUCCESS, Severity.LOW, account_id=b)
    event_log.append(EventType.ACCOUNT_LOCKED, Severity.HIGH, account_id=a)
    window = parse_range("1d")
    before = metrics(window)

    clock.advance(minutes=1)
    report = delete_account(a, preserve_anonymized_records=True)

    assert report.deleted_events == 0
    assert report.anonymized_events == 3  # two above plus the deletion request itself
    assert metrics(window) == before
    assert SecurityEvent.query.filter_by(account_id=a).count() == 0

    anonymized = SecurityEvent.query.filter_by(anonymized=True).all()
    assert len({e.subject_ref for e in anonymized}) == 1
    login = next(e for e in anonymized if e.event_type == "LOGIN_SUCCESS")
    assert login.origin_ip is None
    assert login.details == {"consecutive_failures": 0}


def test_delete_scrubs_the_account(accounts, complaints):
    a, _ = accounts
    create_session(a, "f" * 64)
    confirm(begin_confirmation(a, "f" * 64).id, trust_device=True)
    record_failure(a)

    delete_account(a, preserve_anonymized_records=True)

    user = db.session.get(User, a)
    assert user.is_deleted
    assert user.email.endswith("@deleted.invalid")
    assert user.full_name is None
    assert user.roles == []
    assert find_account_id("alice@example.com") is None
    for model, column in ((DeviceRecord, "account_id"), (LoginAttemptState, "account_id"), (Session, "user_id")):
        assert model.query.filter_by(**{column: a}).count() == 0

    own, _ = complaints
    complaint = db.session.get(Complaint, own)
    assert complaint.account_id is None
    assert "Ward 4" not in complaint.description
    assert ComplaintComment.query.filter_by(author_id=a).count() == 0
    assert ComplaintComment.query.filter_by(body="Bob's private remark").count() == 1


def test_delete_is_idempotent(accounts):
    a, _ = accounts
    first = delete_account(a, preserve_anonymized_records=True)
    events_after_first = SecurityEvent.query.count()

    second = delete_account(a, preserve_anonymized_records=False)

    assert not first.already_deleted
    assert second.already_deleted
    assert SecurityEvent.query.count() == events_after_first

    with pytest.raises(NotFoundError):
        delete_account(999, preserve_anonymized_records=True)


def test_hard_delete_respects_retention_floors(accounts, clock):
    a, _ = accounts
    event_log.append(EventType.LOGIN_SUCCESS, Severity.LOW, account_id=a)
    clock.advance(days=31)
    event_log.append(EventType.LOGIN_FAILURE, Severity.LOW, account_id=a)
    event_log.append(EventType.SUSPICIOUS_ACTIVITY, Severity.MEDIUM, account_id=a)

    report = delete_account(a, preserve_anonymized_records=False)

    # the 31 day old login is past its 30 day floor, everything else is not
    assert report.deleted_events == 1
    assert report.anonymized_events == 3
    remaining = sorted(e.event_type for e in SecurityEvent.query.all())
    assert remaining == ["ACCOUNT_DELETION_REQUESTED", "LOGIN_FAILURE", "SUSPICIOUS_ACTIVITY"]
    assert all(e.account_id is None for e in SecurityEvent.query.all())


def test_retention_policy(ctx, clock):
    policy = current_policy()
    assert policy.to_dict()["incident"] == 365

    event = event_log.append(EventType.SUSPICIOUS_ACTIVITY, Severity.MEDIUM)
    with pytest.raises(PolicyViolation):
        policy.ensure_deletable(event, clock.now)
    clock.advance(days=366)
    policy.ensure_deletable(event, clock.now)

    with pytest.raises(TypeError):
        policy.floors["incident"] = None
    with pytest.raises(ValueError):
        RetentionPolicy.from_config({"RETENTION_DAYS": {"forever": 1}})
    with pytest.raises(ValueError):
        RetentionPolicy.from_config({"RETENTION_DAYS": {"incident": -1}})


def test_compliance_report(accounts):
    a, _ = accounts
    delete_account(a, preserve_anonymized_records=True)
    report = compliance_report()
    assert report["userStatistics"]["totalUsers"] == 1
    assert report["userStatistics"]["deletedAccounts"] == 1
    assert report["recentSecurityEvents"]["ACCOUNT_DELETION_REQUESTED"] == 1
    assert report["dataRetentionDays"]["authentication"] == 30
