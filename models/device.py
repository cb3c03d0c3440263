from models.db import db

class DeviceRecord(db.Model):
    __tablename__ = "device_records"

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    fingerprint = db.Column(db.String(64), nullable=False)

    browser = db.Column(db.String(50), nullable=True)
    operating_system = db.Column(db.String(50), nullable=True)
    device_type = db.Column(db.String(20), nullable=True)
    network_origin = db.Column(db.String(64), nullable=True)

    first_seen = db.Column(db.DateTime, nullable=False)
    last_seen = db.Column(db.DateTime, nullable=False)

    # flips to True only through an explicit "remember this device" confirmation
    trusted = db.Column(db.Boolean, default=False, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("account_id", "fingerprint", name="uq_device_account_fingerprint"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "browser": self.browser,
            "operating_system": self.operating_system,
            "device_type": self.device_type,
            "first_seen": self.first_seen.isoformat(),
            "last_seen": self.last_seen.isoformat(),
            "trusted": self.trusted,
        }
