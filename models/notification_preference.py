from models.db import db

class NotificationPreference(db.Model):
    __tablename__ = "notification_preferences"

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("users.id"), unique=True, nullable=False, index=True)

    email_notifications = db.Column(db.Boolean, default=True, nullable=False)
    security_alerts = db.Column(db.Boolean, default=True, nullable=False)
    account_activity = db.Column(db.Boolean, default=True, nullable=False)
    new_device_logins = db.Column(db.Boolean, default=True, nullable=False)

    FLAGS = ("email_notifications", "security_alerts", "account_activity", "new_device_logins")

    def to_dict(self):
        return {flag: getattr(self, flag) for flag in self.FLAGS}
