"""
Append-only security event log.

The log is the source of truth for everything else in the core: attempt
counters and device records are projections that must be committed in the
same transaction as the event describing their change. Callers that batch
a mutation with its event pass ``commit=False`` and finish with
:func:`commit`, which turns any storage failure into a fatal
:class:`EventLogWriteError`.
"""
import enum
import json

import structlog
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.security_event import SecurityEvent
from security.errors import EventLogWriteError
from utils import clock

logger = structlog.get_logger(__name__)


class EventType(str, enum.Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILURE = "LOGIN_FAILURE"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"
    NEW_DEVICE_LOGIN = "NEW_DEVICE_LOGIN"
    DEVICE_CONFIRMED = "DEVICE_CONFIRMED"
    DEVICE_DENIED = "DEVICE_DENIED"
    DEVICE_REVOKED = "DEVICE_REVOKED"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    DATA_EXPORT_REQUESTED = "DATA_EXPORT_REQUESTED"
    ACCOUNT_DELETION_REQUESTED = "ACCOUNT_DELETION_REQUESTED"


class Severity(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


def append(event_type, severity, account_id=None, origin_ip=None, user_agent=None,
           details=None, commit=True) -> SecurityEvent:
    row = SecurityEvent(
        account_id=account_id,
        event_type=EventType(event_type).value,
        severity=Severity(severity).value,
        timestamp=clock.utcnow(),
        origin_ip=origin_ip,
        user_agent=user_agent[:255] if user_agent else None,
        details_json=json.dumps(details, default=str) if details else None,
    )
    try:
        db.session.add(row)
        if commit:
            db.session.commit()
        else:
            db.session.flush()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("security_event_write_failed", event_type=row.event_type, error=str(exc))
        raise EventLogWriteError() from exc

    logger.info(
        "security_event",
        event_id=row.id,
        event_type=row.event_type,
        severity=row.severity,
        account_id=account_id,
    )
    return row


def commit():
    """Commits the current transaction, treating failure as a lost audit write."""
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("security_transaction_commit_failed", error=str(exc))
        raise EventLogWriteError() from exc


def _filtered(account_id=None, types=None, severities=None, since=None, until=None, search=None):
    q = SecurityEvent.query
    if account_id is not None:
        q = q.filter(SecurityEvent.account_id == account_id)
    if types:
        q = q.filter(SecurityEvent.event_type.in_([EventType(t).value for t in types]))
    if severities:
        q = q.filter(SecurityEvent.severity.in_([Severity(s).value for s in severities]))
    if since is not None:
        q = q.filter(SecurityEvent.timestamp >= since)
    if until is not None:
        q = q.filter(SecurityEvent.timestamp <= until)
    if search:
        pattern = f"%{search}%"
        q = q.filter(or_(
            SecurityEvent.origin_ip.ilike(pattern),
            SecurityEvent.user_agent.ilike(pattern),
            SecurityEvent.details_json.ilike(pattern),
            SecurityEvent.event_type.ilike(pattern),
        ))
    return q


def query(account_id=None, types=None, severities=None, since=None, until=None, search=None,
          limit=50, offset=0):
    """Newest first. Ties on timestamp fall back to the append order."""
    q = _filtered(account_id, types, severities, since, until, search)
    return (
        q.order_by(SecurityEvent.timestamp.desc(), SecurityEvent.id.desc())
        .limit(limit)
        .offset(offset)
        .all()
    )


def count(account_id=None, types=None, severities=None, since=None, until=None, search=None) -> int:
    return _filtered(account_id, types, severities, since, until, search).count()
