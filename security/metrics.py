"""
Security metrics, computed from the event log on every call.

No counters are kept anywhere else, so a historical range can always be
recomputed and always agrees with the log. Anonymized rows still count:
distinct-subject figures use the account id or, once a row has been
anonymized, the pseudonym that replaced it.
"""
import csv
import io
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import String, cast, distinct, func, or_

from models import db
from models.security_event import SecurityEvent
from models.user import User
from security import event_log
from security.errors import ValidationError
from security.event_log import EventType, Severity
from utils import clock

DEFAULT_RANGE = "7d"
_RELATIVE_RANGE = re.compile(r"^(\d{1,4})([hd])$")

CSV_COLUMNS = [
    "id", "timestamp", "type", "severity", "account_id", "subject_ref",
    "origin_ip", "user_agent", "details",
]


@dataclass(frozen=True)
class TimeRange:
    start: datetime
    end: datetime
    label: str

    def to_dict(self):
        return {"start": self.start.isoformat(), "end": self.end.isoformat(), "range": self.label}


def _parse_instant(value: str, name: str) -> datetime:
    value = value.strip()
    if value[-1:] in ("Z", "z"):
        # fromisoformat only learned the Z suffix in 3.11
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"Invalid {name}. Use ISO e.g. 2026-01-20T18:00:00")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_range(value=None, start=None, end=None) -> TimeRange:
    """
    Accepts a relative window (``1d``, ``7d``, ``30d``, ``90d``, ``12h``)
    ending now, or explicit ISO ``start``/``end`` bounds.
    """
    now = clock.utcnow()
    if start or end:
        until = _parse_instant(end, "end") if end else now
        since = _parse_instant(start, "start") if start else until - timedelta(days=7)
        if since > until:
            raise ValidationError("start must be before end")
        return TimeRange(since, until, "custom")

    label = (value or DEFAULT_RANGE).strip().lower()
    m = _RELATIVE_RANGE.match(label)
    if not m or int(m.group(1)) == 0:
        raise ValidationError("Invalid range. Use e.g. 1d, 7d, 30d, 90d or 12h")
    amount = int(m.group(1))
    span = timedelta(hours=amount) if m.group(2) == "h" else timedelta(days=amount)
    return TimeRange(now - span, now, label)


def _parse_choices(raw, enum_cls, name):
    if not raw:
        return None
    values = [v.strip().upper() for v in raw.split(",") if v.strip()]
    try:
        return [enum_cls(v) for v in values]
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ValidationError(f"Invalid {name}. Allowed: {allowed}")


def _parse_account_id(raw):
    if raw is None or raw == "":
        return None
    try:
        account_id = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("account_id must be a number")
    if account_id < 1:
        raise ValidationError("account_id must be 1 or greater")
    return account_id


def parse_filters(severity=None, event_type=None, search=None, account_id=None) -> dict:
    search = (search or "").strip() or None
    if search and len(search) > 200:
        raise ValidationError("Search text is too long")
    return {
        "account_id": _parse_account_id(account_id),
        "severities": _parse_choices(severity, Severity, "severity"),
        "types": _parse_choices(event_type, EventType, "type"),
        "search": search,
    }


def _subject():
    return func.coalesce(cast(SecurityEvent.account_id, String), SecurityEvent.subject_ref)


def _in_range(q, time_range: TimeRange):
    return q.filter(SecurityEvent.timestamp >= time_range.start, SecurityEvent.timestamp <= time_range.end)


def _distinct_subjects(time_range: TimeRange, event_type: EventType) -> int:
    q = db.session.query(func.count(distinct(_subject()))).filter(SecurityEvent.event_type == event_type.value)
    return _in_range(q, time_range).scalar() or 0


def _grouped_counts(column, time_range: TimeRange) -> dict:
    q = db.session.query(column, func.count(SecurityEvent.id)).group_by(column)
    return dict(_in_range(q, time_range).all())


def metrics(time_range: TimeRange) -> dict:
    by_type = _grouped_counts(SecurityEvent.event_type, time_range)
    by_severity = _grouped_counts(SecurityEvent.severity, time_range)

    # accounts that existed at the end of the range, tombstones included until their deletion
    total_users = (
        User.query
        .filter(User.created_at <= time_range.end)
        .filter(or_(User.deleted_at.is_(None), User.deleted_at > time_range.end))
        .count()
    )

    return {
        "totalUsers": total_users,
        "activeUsers": _distinct_subjects(time_range, EventType.LOGIN_SUCCESS),
        "lockedAccounts": _distinct_subjects(time_range, EventType.ACCOUNT_LOCKED),
        "suspiciousActivities": by_type.get(EventType.SUSPICIOUS_ACTIVITY.value, 0),
        "newDeviceLogins": by_type.get(EventType.NEW_DEVICE_LOGIN.value, 0),
        # the failure that trips the lock is recorded as ACCOUNT_LOCKED
        "failedLoginAttempts": (
            by_type.get(EventType.LOGIN_FAILURE.value, 0)
            + by_type.get(EventType.ACCOUNT_LOCKED.value, 0)
        ),
        "eventsByType": {t.value: by_type.get(t.value, 0) for t in EventType},
        "eventsBySeverity": {s.value: by_severity.get(s.value, 0) for s in Severity},
        "period": time_range.to_dict(),
    }


def events(time_range: TimeRange, filters: dict, page: int = 1, page_size: int = 50) -> dict:
    if page < 1:
        raise ValidationError("page must be 1 or greater")
    if page_size < 1:
        raise ValidationError("page_size must be 1 or greater")

    criteria = dict(filters, since=time_range.start, until=time_range.end)
    total = event_log.count(**criteria)
    rows = event_log.query(limit=page_size, offset=(page - 1) * page_size, **criteria)
    return {
        "items": [r.to_dict() for r in rows],
        "page": page,
        "page_size": page_size,
        "total": total,
        "pages": (total + page_size - 1) // page_size,
        "period": time_range.to_dict(),
    }


def _csv_safe(value):
    # keep spreadsheet apps from evaluating cells as formulas
    if isinstance(value, str) and value[:1] in ("=", "+", "-", "@", "\t", "\r"):
        return "'" + value
    return value


def _csv_line(values) -> str:
    buf = io.StringIO()
    csv.writer(buf).writerow([_csv_safe(v) for v in values])
    return buf.getvalue()


def export_csv(time_range: TimeRange, filters: dict, batch_size: int = 500):
    """Yields the filtered event set as CSV text, header first, newest first."""
    yield _csv_line(CSV_COLUMNS)
    offset = 0
    criteria = dict(filters, since=time_range.start, until=time_range.end)
    while True:
        rows = event_log.query(limit=batch_size, offset=offset, **criteria)
        for r in rows:
            yield _csv_line([
                r.id,
                r.timestamp.isoformat(),
                r.event_type,
                r.severity,
                r.account_id if r.account_id is not None else "",
                r.subject_ref or "",
                r.origin_ip or "",
                r.user_agent or "",
                r.details_json or "",
            ])
        if len(rows) < batch_size:
            break
        offset += batch_size
