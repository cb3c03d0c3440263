"""
Data-subject requests: export everything the core holds about an account,
and delete an account under the retention policy.

Deletion never removes the ``users`` row. It becomes a tombstone without
personal data, which keeps the operation idempotent and keeps historical
metrics for earlier ranges stable.
"""
import json
import secrets
from dataclasses import dataclass
from datetime import timedelta

import structlog
from sqlalchemy import or_

from models import db
from models.complaint import Complaint, ComplaintComment
from models.device import DeviceRecord
from models.login_attempt import LoginAttemptState
from models.notification_preference import NotificationPreference
from models.pending_device import PendingDeviceConfirmation
from models.security_event import SecurityEvent
from models.session import Session
from models.user import User
from security import event_log
from security.devices import list_devices
from security.errors import NotFoundError, PolicyViolation
from security.event_log import EventType, Severity
from security.metrics import TimeRange, metrics
from security.notifications import get_preferences, notify
from security.password import UNUSABLE_PASSWORD
from security.retention import current_policy
from utils import clock
from utils.audit import log_event

logger = structlog.get_logger(__name__)

EXPORT_DATA_VERSION = "1.0"

# detail keys that can identify a person or their device
IDENTIFYING_DETAIL_KEYS = {
    "email", "fingerprint", "ip", "origin_ip", "user_agent",
    "full_name", "phone_number", "location", "network_origin",
}

REMOVED_COMPLAINT_TEXT = "Content removed - user deleted"
REMOVED_COMMENT_TEXT = "[removed]"


@dataclass(frozen=True)
class DeletionReport:
    account_id: int
    already_deleted: bool
    anonymized_events: int = 0
    deleted_events: int = 0


def _iso(value):
    return value.isoformat() if value else None


def _complaints_summary(account_id: int) -> dict:
    complaints = (
        Complaint.query
        .filter_by(account_id=account_id)
        .order_by(Complaint.created_at.desc())
        .all()
    )
    by_status = {}
    items = []
    for c in complaints:
        by_status[c.status] = by_status.get(c.status, 0) + 1
        own = [cm for cm in c.comments if cm.author_id == account_id]
        items.append({
            "id": c.id,
            "title": c.title,
            "description": c.description,
            "status": c.status,
            "createdAt": _iso(c.created_at),
            "resolvedAt": _iso(c.resolved_at),
            "comments": [{"id": cm.id, "body": cm.body, "createdAt": _iso(cm.created_at)} for cm in own],
            # other people's comments are theirs, only the count is exported
            "commentsByOthers": len(c.comments) - len(own),
        })

    authored = (
        ComplaintComment.query
        .join(Complaint, ComplaintComment.complaint_id == Complaint.id)
        .filter(ComplaintComment.author_id == account_id)
        .filter(or_(Complaint.account_id.is_(None), Complaint.account_id != account_id))
        .order_by(ComplaintComment.created_at.desc())
        .all()
    )
    return {
        "total": len(complaints),
        "byStatus": by_status,
        "complaints": items,
        "commentsOnOtherComplaints": [
            {"id": cm.id, "complaintId": cm.complaint_id, "body": cm.body, "createdAt": _iso(cm.created_at)}
            for cm in authored
        ],
    }


def _event_for_export(e: SecurityEvent) -> dict:
    return {
        "id": e.id,
        "type": e.event_type,
        "severity": e.severity,
        "timestamp": _iso(e.timestamp),
        "originIp": e.origin_ip,
        "userAgent": e.user_agent,
        "details": e.details,
    }


def export_account_data(account_id: int) -> dict:
    user = db.session.get(User, account_id)
    if user is None or user.is_deleted:
        raise NotFoundError("Account not found.")

    events = (
        SecurityEvent.query
        .filter_by(account_id=account_id)
        .order_by(SecurityEvent.timestamp.desc(), SecurityEvent.id.desc())
        .all()
    )
    bundle = {
        "profile": {
            "id": user.id,
            "email": user.email,
            "fullName": user.full_name,
            "phoneNumber": user.phone_number,
            "roles": sorted(r.name for r in user.roles),
            "createdAt": _iso(user.created_at),
        },
        "complaintsSummary": _complaints_summary(account_id),
        "securityEvents": [_event_for_export(e) for e in events],
        "preferences": get_preferences(account_id).to_dict(),
        "devices": [d.to_dict() for d in list_devices(account_id)],
        "exportInfo": {
            "exportedAt": clock.utcnow().isoformat(),
            "dataVersion": EXPORT_DATA_VERSION,
            "retentionDays": current_policy().to_dict(),
        },
    }

    event = log_event(
        EventType.DATA_EXPORT_REQUESTED,
        Severity.LOW,
        account_id=account_id,
        details={"security_events": len(events)},
    )
    logger.info("account_data_exported", account_id=account_id, security_events=len(events))
    notify(event)
    return bundle


def _anonymize(event: SecurityEvent, pseudonym: str):
    details = {
        k: v for k, v in event.details.items() if k not in IDENTIFYING_DETAIL_KEYS
    }
    event.account_id = None
    event.subject_ref = pseudonym
    event.origin_ip = None
    event.user_agent = None
    event.details_json = json.dumps(details, default=str) if details else None
    event.anonymized = True


def delete_account(account_id: int, preserve_anonymized_records: bool) -> DeletionReport:
    """
    Erases an account. With ``preserve_anonymized_records`` every event is
    kept in anonymized form. Without it events are hard-deleted, except
    those still under their retention floor, which are anonymized anyway.
    Runs as one transaction; calling it again for the same account is a no-op.
    """
    user = db.session.get(User, account_id)
    if user is None:
        raise NotFoundError("Account not found.")
    if user.is_deleted:
        logger.info("account_deletion_noop", account_id=account_id)
        return DeletionReport(account_id=account_id, already_deleted=True)

    now = clock.utcnow()
    policy = current_policy()
    pseudonym = "anon-" + secrets.token_hex(12)

    log_event(
        EventType.ACCOUNT_DELETION_REQUESTED,
        Severity.MEDIUM,
        account_id=account_id,
        details={"preserve_anonymized_records": bool(preserve_anonymized_records)},
        commit=False,
    )

    anonymized = deleted = 0
    for event in SecurityEvent.query.filter_by(account_id=account_id).all():
        if preserve_anonymized_records:
            _anonymize(event, pseudonym)
            anonymized += 1
            continue
        try:
            policy.ensure_deletable(event, now)
        except PolicyViolation:
            # the retention floor wins over the request
            _anonymize(event, pseudonym)
            anonymized += 1
        else:
            db.session.delete(event)
            deleted += 1

    DeviceRecord.query.filter_by(account_id=account_id).delete(synchronize_session=False)
    PendingDeviceConfirmation.query.filter_by(account_id=account_id).delete(synchronize_session=False)
    LoginAttemptState.query.filter_by(account_id=account_id).delete(synchronize_session=False)
    NotificationPreference.query.filter_by(account_id=account_id).delete(synchronize_session=False)
    Session.query.filter_by(user_id=account_id).delete(synchronize_session=False)

    # complaints are public records of the portal, they stay without their author
    for complaint in Complaint.query.filter_by(account_id=account_id).all():
        complaint.description = REMOVED_COMPLAINT_TEXT
        complaint.account_id = None
    ComplaintComment.query.filter_by(author_id=account_id).update(
        {ComplaintComment.body: REMOVED_COMMENT_TEXT, ComplaintComment.author_id: None},
        synchronize_session=False,
    )

    user.email = f"{pseudonym}@deleted.invalid"
    user.full_name = None
    user.phone_number = None
    user.password_hash = UNUSABLE_PASSWORD
    user.roles = []
    user.deleted_at = now

    event_log.commit()
    logger.info(
        "account_deleted",
        account_id=account_id,
        anonymized_events=anonymized,
        deleted_events=deleted,
        preserve_anonymized_records=bool(preserve_anonymized_records),
    )
    return DeletionReport(
        account_id=account_id,
        already_deleted=False,
        anonymized_events=anonymized,
        deleted_events=deleted,
    )


def compliance_report() -> dict:
    now = clock.utcnow()
    last_month = metrics(TimeRange(now - timedelta(days=30), now, "30d"))
    return {
        "userStatistics": {
            "totalUsers": User.query.filter(User.deleted_at.is_(None)).count(),
            "deletedAccounts": User.query.filter(User.deleted_at.isnot(None)).count(),
            "totalComplaints": Complaint.query.count(),
            "totalSecurityEvents": SecurityEvent.query.count(),
            "anonymizedSecurityEvents": SecurityEvent.query.filter_by(anonymized=True).count(),
        },
        "recentSecurityEvents": last_month["eventsByType"],
        "dataRetentionDays": current_policy().to_dict(),
        "generatedAt": now.isoformat(),
    }
