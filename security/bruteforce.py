"""
Login attempt tracker: per-account failure counter and lockout.

Every counter mutation is committed together with the event that
describes it. Expired locks are healed lazily: reads report them as
unlocked, and the next write clears the row and logs ACCOUNT_UNLOCKED.

E-mails without an account get the same counter and the same lock,
keyed by a hash of the normalized address, so the 401/423 sequence a
caller sees never depends on whether the account exists.
"""
import hashlib
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog
from flask import current_app
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from models import db
from models.login_attempt import LoginAttemptState
from security import event_log
from security.errors import LockedError
from security.event_log import EventType, Severity
from security.identity import normalize_email
from security.notifications import notify
from utils import clock
from utils.audit import log_event

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AttemptResult:
    locked: bool
    remaining_attempts: int
    locked_until: Optional[datetime] = None


@dataclass(frozen=True)
class LockStatus:
    locked: bool
    locked_until: Optional[datetime]
    remaining_attempts: int

    def retry_after_seconds(self, now: datetime) -> int:
        if not self.locked:
            return 0
        return max(math.ceil((self.locked_until - now).total_seconds()), 1)


def _max_attempts() -> int:
    return current_app.config.get("MAX_LOGIN_ATTEMPTS", 5)


def _lockout_duration() -> timedelta:
    return timedelta(minutes=current_app.config.get("LOCKOUT_MINUTES", 15))


def email_key(email: str) -> str:
    return hashlib.sha256(normalize_email(email).encode("utf-8")).hexdigest()


def _state_for_update(**key) -> LoginAttemptState:
    """
    Returns the attempt row for an account (``account_id=``) or an unknown
    e-mail (``email_hash=``), creating it if needed, locked for update
    until the current transaction ends.
    """
    q = LoginAttemptState.query.filter_by(**key)
    row = q.with_for_update().first()
    if row is not None:
        return row

    db.session.add(LoginAttemptState(consecutive_failures=0, **key))
    try:
        db.session.flush()
    except IntegrityError:
        # a concurrent request created it first
        db.session.rollback()
    return q.with_for_update().first()


def _is_locked(row: LoginAttemptState, now: datetime) -> bool:
    return row.locked_until is not None and row.locked_until > now


def _increment(row: LoginAttemptState, now: datetime) -> bool:
    """
    Adds one failure to the row unless it is locked. Returns False when a
    concurrent request locked it first; the row is refreshed either way.
    """
    db.session.flush()
    result = db.session.execute(
        update(LoginAttemptState)
        .where(LoginAttemptState.id == row.id)
        .where(or_(LoginAttemptState.locked_until.is_(None), LoginAttemptState.locked_until <= now))
        .values(
            consecutive_failures=LoginAttemptState.consecutive_failures + 1,
            last_failure_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.session.refresh(row)
    return result.rowcount == 1


def _heal_expired_lock(row: LoginAttemptState, now: datetime):
    if row.locked_until is None or row.locked_until > now:
        return None
    expired_at = row.locked_until
    row.locked_until = None
    row.consecutive_failures = 0
    if row.account_id is None:
        return None
    return log_event(
        EventType.ACCOUNT_UNLOCKED,
        Severity.LOW,
        account_id=row.account_id,
        details={"reason": "lock_expired", "locked_until": expired_at.isoformat()},
        commit=False,
    )


def _status_of(row: Optional[LoginAttemptState]) -> LockStatus:
    threshold = _max_attempts()
    if row is None:
        return LockStatus(locked=False, locked_until=None, remaining_attempts=threshold)

    now = clock.utcnow()
    if row.locked_until is not None:
        if row.locked_until > now:
            return LockStatus(locked=True, locked_until=row.locked_until, remaining_attempts=0)
        # expired lock: a fresh budget, the row itself is healed on the next write
        return LockStatus(locked=False, locked_until=None, remaining_attempts=threshold)

    return LockStatus(
        locked=False,
        locked_until=None,
        remaining_attempts=max(threshold - row.consecutive_failures, 0),
    )


def check_status(account_id: int) -> LockStatus:
    """Pure read, safe to call before touching the credential store."""
    return _status_of(LoginAttemptState.query.filter_by(account_id=account_id).first())


def ensure_not_locked(account_id: int) -> LockStatus:
    """
    Raises LockedError for a locked account and records the attempt as
    suspicious. The first such attempt during a lock notifies the owner.
    """
    status = check_status(account_id)
    if not status.locked:
        return status

    now = clock.utcnow()
    lock_started = status.locked_until - _lockout_duration()
    earlier = event_log.count(
        account_id=account_id,
        types=[EventType.SUSPICIOUS_ACTIVITY],
        since=lock_started,
    )
    event = log_event(
        EventType.SUSPICIOUS_ACTIVITY,
        Severity.MEDIUM,
        account_id=account_id,
        details={"reason": "attempt_while_locked", "locked_until": status.locked_until.isoformat()},
    )
    logger.warning("login_attempt_while_locked", account_id=account_id)
    if earlier == 0:
        notify(event)
    raise LockedError(status.locked_until, status.retry_after_seconds(now))


def ensure_unknown_not_locked(email: str) -> LockStatus:
    """Same gate for an e-mail with no account. Nobody to notify."""
    status = _status_of(LoginAttemptState.query.filter_by(email_hash=email_key(email)).first())
    if status.locked:
        logger.warning("login_attempt_while_locked", unknown_account=True)
        raise LockedError(status.locked_until, status.retry_after_seconds(clock.utcnow()))
    return status


def record_failure(account_id: int) -> AttemptResult:
    """
    Counts one failed credential check. Reaching the threshold locks the
    account and logs ACCOUNT_LOCKED instead of LOGIN_FAILURE.
    """
    now = clock.utcnow()
    threshold = _max_attempts()
    row = _state_for_update(account_id=account_id)

    if _is_locked(row, now):
        # already locked, nothing to count
        locked_until = row.locked_until
        event_log.commit()
        return AttemptResult(locked=True, remaining_attempts=0, locked_until=locked_until)

    unlocked_event = _heal_expired_lock(row, now)

    if not _increment(row, now):
        # another request tripped the lock between our read and our write
        locked_until = row.locked_until
        event_log.commit()
        return AttemptResult(locked=True, remaining_attempts=0, locked_until=locked_until)
    failures = row.consecutive_failures

    if failures >= threshold:
        locked_until = now + _lockout_duration()
        row.locked_until = locked_until
        event = log_event(
            EventType.ACCOUNT_LOCKED,
            Severity.HIGH,
            account_id=account_id,
            details={"consecutive_failures": failures, "locked_until": locked_until.isoformat()},
            commit=False,
        )
        event_log.commit()
        logger.warning("account_locked", account_id=account_id, locked_until=locked_until.isoformat())
        if unlocked_event is not None:
            notify(unlocked_event)
        notify(event, locked_until=locked_until.isoformat(timespec="seconds"))
        return AttemptResult(locked=True, remaining_attempts=0, locked_until=locked_until)

    remaining = threshold - failures
    log_event(
        EventType.LOGIN_FAILURE,
        Severity.MEDIUM if remaining == 1 else Severity.LOW,
        account_id=account_id,
        details={"consecutive_failures": failures, "remaining_attempts": remaining},
        commit=False,
    )
    event_log.commit()
    if unlocked_event is not None:
        notify(unlocked_event)
    return AttemptResult(locked=False, remaining_attempts=remaining)


def record_unknown_failure(email: str) -> AttemptResult:
    """
    Counts a failed sign-in for an e-mail with no account. Every failure is
    logged as LOGIN_FAILURE without an account; the address is not stored.
    """
    now = clock.utcnow()
    threshold = _max_attempts()
    row = _state_for_update(email_hash=email_key(email))

    if _is_locked(row, now):
        locked_until = row.locked_until
        event_log.commit()
        return AttemptResult(locked=True, remaining_attempts=0, locked_until=locked_until)

    _heal_expired_lock(row, now)
    if not _increment(row, now):
        locked_until = row.locked_until
        event_log.commit()
        return AttemptResult(locked=True, remaining_attempts=0, locked_until=locked_until)
    failures = row.consecutive_failures

    locked_until = None
    if failures >= threshold:
        locked_until = now + _lockout_duration()
        row.locked_until = locked_until

    remaining = max(threshold - failures, 0)
    log_event(
        EventType.LOGIN_FAILURE,
        Severity.MEDIUM if remaining <= 1 else Severity.LOW,
        details={"unknown_account": True, "consecutive_failures": failures, "remaining_attempts": remaining},
        commit=False,
    )
    event_log.commit()
    return AttemptResult(locked=locked_until is not None, remaining_attempts=remaining, locked_until=locked_until)


def record_success(account_id: int, details=None):
    """
    Resets the failure run and logs LOGIN_SUCCESS. A still-active lock must
    have been rejected by check_status already; reaching here is refused.
    """
    now = clock.utcnow()
    row = _state_for_update(account_id=account_id)

    if _is_locked(row, now):
        locked_until = row.locked_until
        event_log.commit()
        status = LockStatus(locked=True, locked_until=locked_until, remaining_attempts=0)
        raise LockedError(locked_until, status.retry_after_seconds(now))

    unlocked_event = _heal_expired_lock(row, now)
    row.consecutive_failures = 0
    row.last_failure_at = None

    event = log_event(
        EventType.LOGIN_SUCCESS,
        Severity.LOW,
        account_id=account_id,
        details=details,
        commit=False,
    )
    event_log.commit()
    if unlocked_event is not None:
        notify(unlocked_event)
    return event


def purge_expired_unknown_attempts() -> int:
    """Drops unknown-e-mail rows whose lock has run out. Same effect as healing them."""
    removed = LoginAttemptState.query.filter(
        LoginAttemptState.account_id.is_(None),
        LoginAttemptState.locked_until.isnot(None),
        LoginAttemptState.locked_until <= clock.utcnow(),
    ).delete(synchronize_session=False)
    db.session.commit()
    return removed
