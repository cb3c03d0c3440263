"""
Bundled identity store.

The security core only needs two things from the identity store: map an
e-mail to an account id, and verify a password. This implementation keeps
accounts in the ``users`` table with bcrypt hashes; a deployment with an
external identity provider replaces this module.
"""
from sqlalchemy.exc import IntegrityError

from models import db
from models.user import Role, User
from security.errors import AuthenticationError, ValidationError
from security.password import MAX_PASSWORD_BYTES, burn_verification_time, hash_password, password_too_long, verify_password
from utils import clock

DEFAULT_ROLE = "CITIZEN"


def normalize_email(value: str) -> str:
    return (value or "").strip().lower()


def is_valid_email(email: str) -> bool:
    return isinstance(email, str) and "@" in email and len(email) <= 255


def find_account_id(email: str):
    user = User.query.filter_by(email=normalize_email(email)).first()
    if user is None or user.is_deleted:
        return None
    return user.id


def verify_credentials(email: str, password: str) -> int:
    """Returns the account id or raises AuthenticationError."""
    user = User.query.filter_by(email=normalize_email(email)).first()
    if user is None or user.is_deleted:
        burn_verification_time(password)
        raise AuthenticationError()
    if not verify_password(password, user.password_hash):
        raise AuthenticationError()
    return user.id


def register_account(email: str, password: str, min_password_length: int = 12, full_name=None) -> User:
    email = normalize_email(email)
    if not is_valid_email(email):
        raise ValidationError("Invalid email")
    if not isinstance(password, str) or len(password) < min_password_length:
        raise ValidationError(f"Password must be at least {min_password_length} characters")
    if password_too_long(password):
        raise ValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    if full_name is not None and (not isinstance(full_name, str) or len(full_name.strip()) > 120):
        raise ValidationError("Invalid full_name")

    user = User(
        email=email,
        password_hash=hash_password(password),
        full_name=full_name.strip() if full_name else None,
        created_at=clock.utcnow(),
    )
    db.session.add(user)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise ValidationError("Email already registered", next_step="Sign in instead.")

    citizen = Role.query.filter_by(name=DEFAULT_ROLE).first()
    if citizen:
        user.roles.append(citizen)

    db.session.commit()
    return user
