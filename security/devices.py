"""
Device trust registry.

A sign-in from a device that is not trusted for the account is suspended
behind a pending confirmation. Sessions are only issued once the
confirmation is accepted, so denying it always leaves nothing usable
behind. Each pending row can be resolved exactly once: resolving it is a
single DELETE and only the request whose DELETE removed the row wins.
"""
import enum
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog
from flask import current_app
from sqlalchemy.exc import IntegrityError

from models import db
from models.device import DeviceRecord
from models.pending_device import PendingDeviceConfirmation
from security import event_log
from security.errors import ExpiredError, NotFoundError
from security.event_log import EventType, Severity
from security.fingerprint import describe_user_agent, network_origin
from security.notifications import notify
from security.session import revoke_device_sessions
from utils import clock
from utils.audit import log_event

logger = structlog.get_logger(__name__)


class Recognition(str, enum.Enum):
    KNOWN = "KNOWN"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class Identification:
    recognition: Recognition
    device: Optional[DeviceRecord] = None

    @property
    def trusted(self) -> bool:
        return self.device is not None and self.device.trusted


@dataclass(frozen=True)
class ClaimedConfirmation:
    id: str
    account_id: int
    fingerprint: str
    created_device: bool
    expires_at: datetime


@dataclass(frozen=True)
class DenyResult:
    account_id: int
    revoked_sessions: int


def _confirmation_ttl() -> timedelta:
    return timedelta(minutes=current_app.config.get("DEVICE_CONFIRMATION_TTL_MINUTES", 10))


def _confirmation_url(pending_id: str):
    base = current_app.config.get("DEVICE_CONFIRMATION_URL")
    if not base:
        return None
    sep = "&" if "?" in base else "?"
    return f"{base}{sep}id={pending_id}"


def identify(account_id: int, fingerprint: str) -> Identification:
    device = DeviceRecord.query.filter_by(account_id=account_id, fingerprint=fingerprint).first()
    if device is None:
        return Identification(Recognition.UNKNOWN)
    return Identification(Recognition.KNOWN, device)


def touch(device: DeviceRecord, ip=None):
    device.last_seen = clock.utcnow()
    if ip:
        device.network_origin = network_origin(ip)
    db.session.commit()


def begin_confirmation(account_id: int, fingerprint: str, user_agent=None, ip=None) -> PendingDeviceConfirmation:
    """
    Suspends a sign-in from an untrusted device. Any open request for the
    same account and device is replaced, which also restarts its window.
    """
    now = clock.utcnow()
    described = describe_user_agent(user_agent)

    for attempt in range(2):
        try:
            device = DeviceRecord.query.filter_by(account_id=account_id, fingerprint=fingerprint).first()
            created_device = False
            if device is None:
                device = DeviceRecord(
                    account_id=account_id,
                    fingerprint=fingerprint,
                    network_origin=network_origin(ip),
                    first_seen=now,
                    last_seen=now,
                    trusted=False,
                    **described,
                )
                db.session.add(device)
                created_device = True

            open_requests = PendingDeviceConfirmation.query.filter_by(
                account_id=account_id, fingerprint=fingerprint
            )
            previous = open_requests.first()
            if previous is not None:
                # the replacement inherits responsibility for a device row it did not create
                created_device = created_device or previous.created_device
                db.session.expunge(previous)
            # always issued: it takes the write lock before the insert below
            open_requests.delete(synchronize_session=False)

            pending = PendingDeviceConfirmation(
                id=secrets.token_urlsafe(32),
                account_id=account_id,
                fingerprint=fingerprint,
                created_at=now,
                expires_at=now + _confirmation_ttl(),
                created_device=created_device,
                ip=ip,
                user_agent=user_agent[:255] if user_agent else None,
            )
            db.session.add(pending)
            db.session.flush()
            break
        except IntegrityError:
            # a concurrent sign-in from the same device got there first
            db.session.rollback()
            if attempt:
                raise

    event = log_event(
        EventType.NEW_DEVICE_LOGIN,
        Severity.MEDIUM,
        account_id=account_id,
        details={"fingerprint": fingerprint, "replaced_pending": previous is not None, **described},
        commit=False,
    )
    pending_id, expires_at = pending.id, pending.expires_at
    event_log.commit()
    logger.info("device_confirmation_opened", account_id=account_id, expires_at=expires_at.isoformat())

    notify(
        event,
        pending_confirmation_id=pending_id,
        expires_at=expires_at.isoformat(timespec="seconds"),
        confirmation_url=_confirmation_url(pending_id),
    )
    return pending


def _discard_attempt(claimed: ClaimedConfirmation) -> int:
    """Undoes what the suspended sign-in left behind. Caller commits."""
    if claimed.created_device:
        DeviceRecord.query.filter_by(
            account_id=claimed.account_id, fingerprint=claimed.fingerprint, trusted=False
        ).delete(synchronize_session=False)
    return revoke_device_sessions(claimed.account_id, claimed.fingerprint, commit=False)


def _claim(pending_id: str) -> ClaimedConfirmation:
    pending = db.session.get(PendingDeviceConfirmation, pending_id) if pending_id else None
    if pending is None:
        raise NotFoundError("This confirmation request does not exist or was already used.")

    claimed = ClaimedConfirmation(
        id=pending.id,
        account_id=pending.account_id,
        fingerprint=pending.fingerprint,
        created_device=pending.created_device,
        expires_at=pending.expires_at,
    )
    db.session.expunge(pending)

    removed = PendingDeviceConfirmation.query.filter_by(id=pending_id).delete(synchronize_session=False)
    if removed == 0:
        db.session.rollback()
        raise NotFoundError("This confirmation request does not exist or was already used.")

    if claimed.expires_at <= clock.utcnow():
        # an expired request counts as a denial
        revoked = _discard_attempt(claimed)
        log_event(
            EventType.DEVICE_DENIED,
            Severity.MEDIUM,
            account_id=claimed.account_id,
            details={"fingerprint": claimed.fingerprint, "reason": "expired", "revoked_sessions": revoked},
            commit=False,
        )
        event_log.commit()
        raise ExpiredError()
    return claimed


def confirm(pending_id: str, trust_device: bool) -> DeviceRecord:
    """Accepts a suspended sign-in. The caller then issues the session."""
    claimed = _claim(pending_id)
    now = clock.utcnow()

    device = DeviceRecord.query.filter_by(
        account_id=claimed.account_id, fingerprint=claimed.fingerprint
    ).first()
    if device is None:
        # removed while the request was open
        device = DeviceRecord(
            account_id=claimed.account_id,
            fingerprint=claimed.fingerprint,
            first_seen=now,
        )
        db.session.add(device)
    device.trusted = bool(trust_device)
    device.last_seen = now

    event = log_event(
        EventType.DEVICE_CONFIRMED,
        Severity.LOW,
        account_id=claimed.account_id,
        details={"fingerprint": claimed.fingerprint, "trusted": bool(trust_device)},
        commit=False,
    )
    event_log.commit()
    logger.info("device_confirmed", account_id=claimed.account_id, trusted=bool(trust_device))
    notify(event)
    return device


def deny(pending_id: str) -> DenyResult:
    """Rejects a suspended sign-in and ends every session of that device."""
    claimed = _claim(pending_id)
    revoked = _discard_attempt(claimed)

    event = log_event(
        EventType.DEVICE_DENIED,
        Severity.HIGH,
        account_id=claimed.account_id,
        details={"fingerprint": claimed.fingerprint, "reason": "user_denied", "revoked_sessions": revoked},
        commit=False,
    )
    event_log.commit()
    logger.warning("device_denied", account_id=claimed.account_id, revoked_sessions=revoked)
    notify(event)
    return DenyResult(account_id=claimed.account_id, revoked_sessions=revoked)


def list_devices(account_id: int):
    return (
        DeviceRecord.query
        .filter_by(account_id=account_id)
        .order_by(DeviceRecord.last_seen.desc())
        .all()
    )


def revoke_device(account_id: int, device_id: int) -> int:
    device = DeviceRecord.query.filter_by(id=device_id, account_id=account_id).first()
    if device is None:
        raise NotFoundError("Device not found.", next_step="Refresh your device list.")

    fingerprint = device.fingerprint
    PendingDeviceConfirmation.query.filter_by(
        account_id=account_id, fingerprint=fingerprint
    ).delete(synchronize_session=False)
    db.session.delete(device)
    revoked = revoke_device_sessions(account_id, fingerprint, commit=False)

    event = log_event(
        EventType.DEVICE_REVOKED,
        Severity.MEDIUM,
        account_id=account_id,
        details={"fingerprint": fingerprint, "revoked_sessions": revoked},
        commit=False,
    )
    event_log.commit()
    notify(event)
    return revoked


def expire_stale_confirmations() -> int:
    """Resolves every expired pending request as denied. Storage hygiene only."""
    now = clock.utcnow()
    stale_ids = [
        row.id for row in
        PendingDeviceConfirmation.query.filter(PendingDeviceConfirmation.expires_at <= now).all()
    ]
    expired = 0
    for pending_id in stale_ids:
        try:
            _claim(pending_id)
        except ExpiredError:
            expired += 1
        except NotFoundError:
            continue
    return expired
