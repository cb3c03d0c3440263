from flask import Blueprint, request, jsonify, current_app, g
import structlog

from models import db
from models.user import User
from security import event_log
from security.bruteforce import (
    ensure_not_locked,
    ensure_unknown_not_locked,
    record_failure,
    record_success,
    record_unknown_failure,
)
from security.csrf import clear_csrf_token, issue_csrf_token
from security.devices import begin_confirmation, identify, touch
from security.errors import AuthenticationError, LockedError, ValidationError
from security.fingerprint import derive_fingerprint
from security.identity import find_account_id, is_valid_email, normalize_email, register_account, verify_credentials
from security.metrics import parse_range
from security.password import MAX_PASSWORD_BYTES, password_too_long
from security.session import create_session, revoke_device_sessions, revoke_session, token_from_request
from utils import clock
from utils.audit import client_ip, client_user_agent
from utils.auth_context import login_required
from utils.logs import mask_ip

logger = structlog.get_logger(__name__)

auth_bp = Blueprint("auth", __name__)


def set_session_cookie(resp, raw_token):
    cookie_name = current_app.config.get("AUTH_COOKIE_NAME", "nagarsewak_session")
    max_age = current_app.config.get("SESSION_LIFETIME_SECONDS", 8 * 60 * 60)
    resp.set_cookie(
        cookie_name,
        raw_token,
        httponly=True,
        secure=current_app.config.get("SESSION_COOKIE_SECURE", False),
        samesite=current_app.config.get("SESSION_COOKIE_SAMESITE", "Lax"),
        max_age=max_age,
        path="/",
    )
    return issue_csrf_token(resp)


@auth_bp.post("/register")
def register():
    data = request.get_json(silent=True) or {}
    email = normalize_email(data.get("email"))
    password = data.get("password") or ""

    if not is_valid_email(email):
        return jsonify(error="Invalid email", next_step="Enter a valid email address."), 400

    if User.query.filter_by(email=email).first():
        return jsonify(error="Email already registered", next_step="Sign in instead."), 409

    user = register_account(
        email,
        password,
        min_password_length=current_app.config.get("PASSWORD_MIN_LEN", 12),
        full_name=data.get("full_name"),
    )
    logger.info("account_registered", account_id=user.id)
    return jsonify(message="Registered successfully", id=user.id), 201


@auth_bp.post("/login")
def login():
    data = request.get_json(silent=True) or {}
    email = normalize_email(data.get("email"))
    password = data.get("password")
    client_id = data.get("fingerprint")

    if not is_valid_email(email) or not isinstance(password, str) or not password:
        raise ValidationError("Email and password are required")
    if password_too_long(password):
        raise ValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    if client_id is not None and (not isinstance(client_id, str) or len(client_id) > 255):
        raise ValidationError("Invalid fingerprint")

    account_id = find_account_id(email)
    if account_id is not None:
        ensure_not_locked(account_id)
    else:
        ensure_unknown_not_locked(email)

    try:
        account_id = verify_credentials(email, password)
    except AuthenticationError:
        logger.info("login_failed", ip=mask_ip(client_ip()), known_account=account_id is not None)
        if account_id is not None:
            result = record_failure(account_id)
        else:
            result = record_unknown_failure(email)
        if result.locked:
            raise LockedError(
                result.locked_until,
                max(int((result.locked_until - clock.utcnow()).total_seconds()), 1),
            )
        raise

    user_agent = client_user_agent()
    ip = client_ip()
    fingerprint = derive_fingerprint(user_agent, ip, client_id)
    identification = identify(account_id, fingerprint)

    if identification.trusted:
        record_success(account_id, details={"fingerprint": fingerprint})
        touch(identification.device, ip)
        # rotate: a device holds at most one live session
        revoked_count = revoke_device_sessions(account_id, fingerprint)
        raw_token = create_session(account_id, fingerprint)
        logger.info("login_succeeded", account_id=account_id, revoked_sessions=revoked_count)

        resp = jsonify(message="Login OK", session_token=raw_token)
        return set_session_cookie(resp, raw_token), 200

    record_success(account_id, details={"fingerprint": fingerprint, "device_confirmation_required": True})
    pending = begin_confirmation(account_id, fingerprint, user_agent=user_agent, ip=ip)
    return jsonify(
        message="Sign-in from a new device needs confirmation.",
        pending_confirmation_id=pending.id,
        expires_at=pending.expires_at.isoformat(),
        next_step="Confirm or deny this sign-in using the link we emailed you before it expires.",
    ), 202


@auth_bp.post("/logout")
@login_required
def logout():
    cookie_name = current_app.config.get("AUTH_COOKIE_NAME", "nagarsewak_session")
    raw_token, _ = token_from_request()

    revoke_session(raw_token)
    logger.info("logged_out", account_id=g.user.id)

    resp = jsonify(message="Logged out")
    resp.delete_cookie(cookie_name, path="/")
    return clear_csrf_token(resp), 200


@auth_bp.get("/me")
@login_required
def me():
    return jsonify(
        id=g.user.id,
        email=g.user.email,
        roles=sorted(r.name for r in g.user.roles),
        full_name=g.user.full_name,
        phone_number=g.user.phone_number,
        device_fingerprint=g.session.fingerprint,
    ), 200


@auth_bp.put("/me")
@login_required
def update_profile():
    data = request.get_json(silent=True) or {}
    full_name = data.get("full_name")
    phone_number = data.get("phone_number")

    if full_name is not None:
        if not isinstance(full_name, str) or len(full_name.strip()) > 120:
            return jsonify(error="Invalid full_name"), 400
        g.user.full_name = full_name.strip()

    if phone_number is not None:
        if not isinstance(phone_number, str) or len(phone_number.strip()) > 30:
            return jsonify(error="Invalid phone_number"), 400
        g.user.phone_number = phone_number.strip()

    db.session.commit()
    return jsonify(message="Profile updated", full_name=g.user.full_name, phone_number=g.user.phone_number), 200


@auth_bp.get("/me/security-events")
@login_required
def my_security_events():
    limit = request.args.get("limit", type=int) or 50
    limit = max(1, min(limit, 200))
    page = request.args.get("page", 1, type=int)
    if page < 1:
        raise ValidationError("page must be 1 or greater")

    since = until = None
    if any(request.args.get(k) for k in ("range", "start", "end")):
        time_range = parse_range(
            request.args.get("range"),
            start=request.args.get("start"),
            end=request.args.get("end"),
        )
        since, until = time_range.start, time_range.end

    rows = event_log.query(
        account_id=g.user.id,
        since=since,
        until=until,
        limit=limit,
        offset=(page - 1) * limit,
    )
    return jsonify([r.to_dict() for r in rows]), 200
