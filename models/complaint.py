from utils import clock
from models.db import db

# Owned by the complaints portal. The security core only reads these rows
# for data exports and scrubs them on account deletion.

class Complaint(db.Model):
    __tablename__ = "complaints"

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default="PENDING")
    # status values: PENDING, IN_PROGRESS, RESOLVED

    created_at = db.Column(db.DateTime, default=lambda: clock.utcnow(), nullable=False)
    resolved_at = db.Column(db.DateTime, nullable=True)

    comments = db.relationship("ComplaintComment", backref="complaint", lazy=True)


class ComplaintComment(db.Model):
    __tablename__ = "complaint_comments"

    id = db.Column(db.Integer, primary_key=True)
    complaint_id = db.Column(db.Integer, db.ForeignKey("complaints.id"), nullable=False, index=True)
    author_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    body = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=lambda: clock.utcnow(), nullable=False)
