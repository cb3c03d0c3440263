from utils import clock
from models.db import db

class LoginAttemptState(db.Model):
    __tablename__ = "login_attempt_states"

    id = db.Column(db.Integer, primary_key=True)

    # One row per account, or per unknown e-mail keyed by its hash.
    # Mutated only by security.bruteforce
    account_id = db.Column(db.Integer, db.ForeignKey("users.id"), unique=True, nullable=True, index=True)
    email_hash = db.Column(db.String(64), unique=True, nullable=True, index=True)

    consecutive_failures = db.Column(db.Integer, default=0, nullable=False)
    last_failure_at = db.Column(db.DateTime, nullable=True)
    locked_until = db.Column(db.DateTime, nullable=True)

    updated_at = db.Column(db.DateTime, default=lambda: clock.utcnow(), onupdate=lambda: clock.utcnow(), nullable=False)
