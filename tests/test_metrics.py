import csv
import io
from datetime import datetime

import pytest

from security import event_log
from security.errors import ValidationError
from security.event_log import EventType, Severity
from security.identity import register_account
from security.metrics import CSV_COLUMNS, events, export_csv, metrics, parse_filters, parse_range

from conftest import PASSWORD


@pytest.fixture
def populated(ctx):
    a = register_account("a@example.com", PASSWORD).id
    b = register_account("b@example.com", PASSWORD).id
    for account_id in (a, b, a):
        event_log.append(EventType.LOGIN_SUCCESS, Severity.LOW, account_id=account_id)
    event_log.append(EventType.LOGIN_FAILURE, Severity.LOW, account_id=a)
    event_log.append(EventType.LOGIN_FAILURE, Severity.MEDIUM, account_id=a)
    event_log.append(EventType.ACCOUNT_LOCKED, Severity.HIGH, account_id=b)
    event_log.append(EventType.SUSPICIOUS_ACTIVITY, Severity.MEDIUM, account_id=b, details={"reason": "attempt_while_locked"})
    event_log.append(EventType.NEW_DEVICE_LOGIN, Severity.MEDIUM, account_id=a, origin_ip="=cmd|' /C calc'!A0")
    return a, b


def test_metrics_are_derived_from_the_log(populated):
    result = metrics(parse_range("1d"))

    assert result["totalUsers"] == 2
    assert result["activeUsers"] == 2
    assert result["lockedAccounts"] == 1
    assert result["suspiciousActivities"] == 1
    assert result["newDeviceLogins"] == 1
    assert result["failedLoginAttempts"] == 3
    assert result["eventsByType"]["LOGIN_SUCCESS"] == 3
    assert result["eventsByType"]["DEVICE_DENIED"] == 0
    assert result["eventsBySeverity"] == {"LOW": 4, "MEDIUM": 3, "HIGH": 1, "CRITICAL": 0}
    assert result["period"]["range"] == "1d"


def test_old_events_fall_out_of_the_window(populated, clock):
    clock.advance(days=2)
    result = metrics(parse_range("1d"))
    assert result["activeUsers"] == 0
    assert result["failedLoginAttempts"] == 0
    assert result["totalUsers"] == 2

    assert metrics(parse_range("7d"))["activeUsers"] == 2


def test_parse_range(ctx, clock):
    week = parse_range(None)
    assert week.label == "7d"
    assert (week.end - week.start).days == 7
    assert (parse_range("12h").end - parse_range("12h").start).total_seconds() == 12 * 3600

    custom = parse_range(start="2026-02-01T00:00:00", end="2026-02-02T00:00:00+00:00")
    assert custom.label == "custom"
    assert custom.end.tzinfo is None

    for bad in ("7w", "0d", "yesterday"):
        with pytest.raises(ValidationError):
            parse_range(bad)
    with pytest.raises(ValidationError):
        parse_range(start="2026-02-02T00:00:00", end="2026-02-01T00:00:00")
    with pytest.raises(ValidationError):
        parse_range(start="not-a-date")

    zulu = parse_range(start="2026-02-01T00:00:00Z", end="2026-02-01T06:00:00Z")
    assert zulu.start == datetime(2026, 2, 1, 0, 0)
    assert zulu.end == datetime(2026, 2, 1, 6, 0)


def test_parse_filters():
    filters = parse_filters(severity="high, critical", event_type="ACCOUNT_LOCKED", search="  ")
    assert filters["severities"] == [Severity.HIGH, Severity.CRITICAL]
    assert filters["types"] == [EventType.ACCOUNT_LOCKED]
    assert filters["search"] is None
    assert filters["account_id"] is None
    assert parse_filters(account_id="7")["account_id"] == 7
    with pytest.raises(ValidationError):
        parse_filters(severity="SEVERE")
    for bad in ("abc", "0", "-3"):
        with pytest.raises(ValidationError):
            parse_filters(account_id=bad)


def test_events_page(populated):
    page = events(parse_range("1d"), parse_filters(), page=2, page_size=3)
    assert page["total"] == 8
    assert page["pages"] == 3
    assert len(page["items"]) == 3

    high = events(parse_range("1d"), parse_filters(severity="HIGH"))
    assert [i["type"] for i in high["items"]] == ["ACCOUNT_LOCKED"]

    with pytest.raises(ValidationError):
        events(parse_range("1d"), parse_filters(), page=0)


def test_csv_export_matches_the_filtered_set(populated):
    text = "".join(export_csv(parse_range("1d"), parse_filters(event_type="LOGIN_FAILURE,NEW_DEVICE_LOGIN"), batch_size=2))
    rows = list(csv.reader(io.StringIO(text)))

    assert rows[0] == CSV_COLUMNS
    assert [r[2] for r in rows[1:]] == ["NEW_DEVICE_LOGIN", "LOGIN_FAILURE", "LOGIN_FAILURE"]
    # formula-looking cells are neutralised for spreadsheet apps
    assert rows[1][CSV_COLUMNS.index("origin_ip")].startswith("'=")


def test_csv_export_of_an_empty_range_is_just_the_header(ctx):
    rows = list(csv.reader(io.StringIO("".join(export_csv(parse_range("1d"), parse_filters())))))
    assert rows == [CSV_COLUMNS]


def test_events_and_export_can_be_narrowed_to_one_account(populated):
    a, b = populated

    page = events(parse_range("1d"), parse_filters(account_id=str(b)))
    assert page["total"] == 3
    assert {i["account_id"] for i in page["items"]} == {b}

    rows = list(csv.reader(io.StringIO("".join(export_csv(parse_range("1d"), parse_filters(account_id=str(a)))))))
    assert len(rows) == 1 + 5
    assert {r[CSV_COLUMNS.index("account_id")] for r in rows[1:]} == {str(a)}


def test_csv_export_guards_tab_and_carriage_return_prefixes(ctx):
    event_log.append(EventType.LOGIN_FAILURE, Severity.LOW, user_agent="\t=1+1")
    event_log.append(EventType.LOGIN_FAILURE, Severity.LOW, user_agent="\r=2+2")

    rows = list(csv.reader(io.StringIO("".join(export_csv(parse_range("1d"), parse_filters())))))
    agents = [r[CSV_COLUMNS.index("user_agent")] for r in rows[1:]]
    assert agents == ["'\r=2+2", "'\t=1+1"]
