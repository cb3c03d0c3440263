import hashlib
import secrets
from datetime import timedelta
from flask import request, current_app

from models import db
from models.session import Session
from utils import clock
from utils.audit import client_ip, client_user_agent

def _hash_token(token: str) -> str:
    # SHA-256 is fine for hashing random session tokens
    return hashlib.sha256(token.encode("utf-8")).hexdigest()

def create_session(user_id: int, fingerprint: str = None) -> str:
    """
    Creates a server-side session bound to a device and returns the RAW
    token. Only the hash is stored in DB.
    """
    raw_token = secrets.token_urlsafe(32)

    lifetime = current_app.config.get("SESSION_LIFETIME_SECONDS", 28800)
    now = clock.utcnow()
    user_agent = client_user_agent()

    row = Session(
        user_id=user_id,
        token_hash=_hash_token(raw_token),
        fingerprint=fingerprint,
        created_at=now,
        last_seen_at=now,
        expires_at=now + timedelta(seconds=lifetime),
        ip=client_ip(),
        user_agent=user_agent[:255] if user_agent else None,
    )
    db.session.add(row)
    db.session.commit()
    return raw_token

def token_from_request():
    """
    Returns (raw_token, transport). Bearer tokens win over the cookie;
    transport is "bearer", "cookie" or None.
    """
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        token = auth[len("Bearer "):].strip()
        if token:
            return token, "bearer"

    cookie_name = current_app.config.get("AUTH_COOKIE_NAME", "nagarsewak_session")
    token = request.cookies.get(cookie_name)
    if token:
        return token, "cookie"
    return None, None

def get_session_from_request():
    raw_token, _ = token_from_request()
    if not raw_token:
        return None

    now = clock.utcnow()
    sess = (
        Session.query
        .filter_by(token_hash=_hash_token(raw_token), revoked=False)
        .first()
    )
    if not sess:
        return None

    # Absolute expiry
    if sess.expires_at <= now:
        return None

    # Idle timeout
    idle_seconds = current_app.config.get("IDLE_TIMEOUT_SECONDS", 1800)
    last_seen = sess.last_seen_at or sess.created_at
    if (last_seen + timedelta(seconds=idle_seconds)) <= now:
        return None

    sess.last_seen_at = now
    db.session.commit()
    return sess

def revoke_session(raw_token: str) -> bool:
    if not raw_token:
        return False
    sess = Session.query.filter_by(token_hash=_hash_token(raw_token)).first()
    if not sess:
        return False
    sess.revoked = True
    db.session.commit()
    return True

def revoke_device_sessions(user_id: int, fingerprint: str, commit: bool = True) -> int:
    count = (
        Session.query
        .filter_by(user_id=user_id, fingerprint=fingerprint, revoked=False)
        .update({Session.revoked: True}, synchronize_session=False)
    )
    if commit:
        db.session.commit()
    return count

def purge_stale_sessions() -> int:
    """Deletes revoked and expired sessions. Storage hygiene only."""
    now = clock.utcnow()
    count = (
        Session.query
        .filter((Session.revoked.is_(True)) | (Session.expires_at <= now))
        .delete(synchronize_session=False)
    )
    db.session.commit()
    return count
