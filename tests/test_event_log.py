import pytest
from sqlalchemy.exc import OperationalError

from models import db
from security import event_log
from security.errors import EventLogWriteError
from security.event_log import EventType, Severity
from utils.audit import log_event


def test_appends_are_ordered_newest_first(ctx, clock):
    first = event_log.append(EventType.LOGIN_FAILURE, Severity.LOW, account_id=1)
    second = event_log.append(EventType.LOGIN_SUCCESS, Severity.LOW, account_id=1)
    clock.advance(seconds=1)
    third = event_log.append(EventType.NEW_DEVICE_LOGIN, Severity.MEDIUM, account_id=2)

    assert first.id < second.id < third.id
    assert [e.id for e in event_log.query()] == [third.id, second.id, first.id]
    assert third.timestamp == clock.now


def test_query_filters(ctx):
    event_log.append(EventType.LOGIN_FAILURE, Severity.LOW, account_id=1, origin_ip="198.51.100.4")
    event_log.append(EventType.ACCOUNT_LOCKED, Severity.HIGH, account_id=1, details={"locked_until": "x"})
    event_log.append(EventType.LOGIN_SUCCESS, Severity.LOW, account_id=2, user_agent="curl/8.0")

    assert event_log.count(account_id=1) == 2
    assert [e.event_type for e in event_log.query(severities=[Severity.HIGH])] == ["ACCOUNT_LOCKED"]
    assert event_log.count(types=[EventType.LOGIN_FAILURE, EventType.LOGIN_SUCCESS]) == 2
    assert event_log.query(search="198.51.100")[0].event_type == "LOGIN_FAILURE"
    assert event_log.query(search="CURL")[0].account_id == 2
    assert event_log.count(search="locked_until") == 1


def test_paging(ctx):
    for _ in range(5):
        event_log.append(EventType.LOGIN_FAILURE, Severity.LOW, account_id=1)
    ids = [e.id for e in event_log.query()]
    assert [e.id for e in event_log.query(limit=2, offset=2)] == ids[2:4]


def test_unknown_type_is_rejected(ctx):
    with pytest.raises(ValueError):
        event_log.append("PASSWORD_SPRAY", Severity.LOW)


def test_details_round_trip(ctx):
    row = event_log.append(EventType.SUSPICIOUS_ACTIVITY, Severity.MEDIUM, details={"reason": "test"})
    assert row.details == {"reason": "test"}
    assert row.to_dict()["type"] == "SUSPICIOUS_ACTIVITY"


def test_log_event_outside_a_request_has_no_origin(ctx):
    row = log_event(EventType.LOGIN_SUCCESS, Severity.LOW, account_id=3)
    assert row.origin_ip is None
    assert row.user_agent is None


def test_log_event_records_the_request_origin(app):
    with app.test_request_context(
        "/login",
        headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1", "User-Agent": "pytest"},
    ):
        row = log_event(EventType.LOGIN_FAILURE, Severity.LOW, account_id=3)
        assert row.origin_ip == "203.0.113.9"
        assert row.user_agent == "pytest"


def test_write_failure_is_fatal(ctx, monkeypatch):
    def broken_commit():
        raise OperationalError("INSERT INTO security_events", {}, Exception("disk I/O error"))

    monkeypatch.setattr(db.session, "commit", broken_commit)
    with pytest.raises(EventLogWriteError) as excinfo:
        event_log.append(EventType.LOGIN_SUCCESS, Severity.LOW, account_id=1)
    assert excinfo.value.status_code == 500

    monkeypatch.undo()
    assert event_log.count() == 0
