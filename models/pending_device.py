from models.db import db

class PendingDeviceConfirmation(db.Model):
    __tablename__ = "pending_device_confirmations"

    # opaque url-safe token, handed to the user as the confirmation id
    id = db.Column(db.String(64), primary_key=True)

    account_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    fingerprint = db.Column(db.String(64), nullable=False)

    created_at = db.Column(db.DateTime, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)

    # True when the DeviceRecord was created by this login attempt
    created_device = db.Column(db.Boolean, default=False, nullable=False)

    ip = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)

    __table_args__ = (
        # Hard rule: only one open confirmation per account and device
        db.UniqueConstraint("account_id", "fingerprint", name="uq_pending_account_fingerprint"),
    )
