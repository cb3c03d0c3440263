import atexit

import click
import structlog
from flask import Flask, jsonify

from config import Config
from routes import ALL_BLUEPRINTS

from models import db
from models.user import User, Role
from flask_migrate import Migrate
from security.csrf import csrf_protect
from security.bruteforce import purge_expired_unknown_attempts
from security.devices import expire_stale_confirmations
from security.errors import LockedError, SecurityCoreError
from security.identity import normalize_email
from security.notifications import init_notifications
from security.retention import RetentionPolicy
from security.session import purge_stale_sessions
from utils.auth_context import load_current_user
from utils.emailer import SmtpSender, SmtpSettings
from utils.logs import configure_logging
from utils.seed import seed_roles

logger = structlog.get_logger(__name__)


def create_app(config_overrides=None, sender=None):
    """
    ``sender`` is the notification delivery collaborator; the SMTP sender
    built from configuration is used when none is given.
    """
    app = Flask(__name__)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    configure_logging(app.config.get("LOG_LEVEL", "INFO"))

    # Register routes
    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    # Built once; a bad retention setting stops startup
    app.extensions["retention_policy"] = RetentionPolicy.from_config(app.config)

    if sender is None:
        sender = SmtpSender(SmtpSettings.from_config(app.config))
    dispatcher = init_notifications(app, sender)
    atexit.register(dispatcher.shutdown)

    # Seed default roles at startup (safe & idempotent)
    with app.app_context():
        if app.config.get("AUTO_CREATE_TABLES"):
            db.create_all()
        seed_roles()

    @app.before_request
    def _load_user():
        load_current_user()

    @app.before_request
    def _csrf_protect():
        return csrf_protect()

    @app.errorhandler(SecurityCoreError)
    def _security_error(exc):
        if exc.status_code >= 500:
            db.session.rollback()
            logger.error("security_core_failure", error=exc.error, message=exc.message)
        resp = jsonify(exc.to_dict())
        if isinstance(exc, LockedError):
            resp.headers["Retry-After"] = str(exc.retry_after_seconds)
        return resp, exc.status_code

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        resp.headers["Cache-Control"] = "no-store"
        return resp

    register_cli(app)

    return app

#-------------------------

def register_cli(app):
    @app.cli.command("make-admin")
    @click.argument("email")
    def make_admin(email):
        """Promote a user to ADMIN by email (bootstrap)."""
        user = User.query.filter_by(email=normalize_email(email)).first()
        if not user or user.is_deleted:
            click.echo("User not found")
            return

        admin_role = Role.query.filter_by(name="ADMIN").first()
        if not admin_role:
            admin_role = Role(name="ADMIN")
            db.session.add(admin_role)
            db.session.commit()

        if admin_role not in user.roles:
            user.roles.append(admin_role)
            db.session.commit()

        click.echo(f"{user.email} promoted to ADMIN")

    @app.cli.command("purge-expired")
    def purge_expired():
        """Resolve expired device confirmations, drop dead sessions and stale attempt rows."""
        expired = expire_stale_confirmations()
        purged = purge_stale_sessions()
        attempts = purge_expired_unknown_attempts()
        logger.info(
            "storage_purged",
            expired_confirmations=expired,
            purged_sessions=purged,
            purged_attempts=attempts,
        )
        click.echo(f"expired confirmations: {expired}, purged sessions: {purged}, purged attempts: {attempts}")

#-------------------------


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
