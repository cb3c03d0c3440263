import json

from models.db import db

class SecurityEvent(db.Model):
    """
    Append-only security event stream. Rows are only ever touched again by
    account deletion, which anonymizes or removes them.
    """
    __tablename__ = "security_events"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)

    account_id = db.Column(db.Integer, nullable=True, index=True)  # nullable for unauth/anonymized events
    # random pseudonym that replaces account_id once the row is anonymized
    subject_ref = db.Column(db.String(64), nullable=True, index=True)

    event_type = db.Column(db.String(40), nullable=False, index=True)
    severity = db.Column(db.String(10), nullable=False, index=True)
    timestamp = db.Column(db.DateTime, nullable=False, index=True)

    origin_ip = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)
    details_json = db.Column(db.Text, nullable=True)

    anonymized = db.Column(db.Boolean, default=False, nullable=False)

    __table_args__ = (
        db.Index("ix_security_events_account_type_time", "account_id", "event_type", "timestamp"),
    )

    @property
    def details(self) -> dict:
        if not self.details_json:
            return {}
        return json.loads(self.details_json)

    def to_dict(self):
        return {
            "id": self.id,
            "account_id": self.account_id,
            "subject_ref": self.subject_ref,
            "type": self.event_type,
            "severity": self.severity,
            "timestamp": self.timestamp.isoformat(),
            "origin_ip": self.origin_ip,
            "user_agent": self.user_agent,
            "details": self.details,
            "anonymized": self.anonymized,
        }
