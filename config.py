import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to the app as nagarsewak_security.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "nagarsewak_security.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Create tables on startup instead of running migrations (tests, demos)
    AUTO_CREATE_TABLES = _env_bool("AUTO_CREATE_TABLES", "false")

    # Session cookie name for our auth token
    AUTH_COOKIE_NAME = "nagarsewak_session"

    # 8 hours session lifetime
    SESSION_LIFETIME_SECONDS = 8 * 60 * 60

    # Idle timeout: 30 minutes
    IDLE_TIMEOUT_SECONDS = 30 * 60

    # Session/cookie security defaults
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    SESSION_COOKIE_SECURE = _env_bool("SESSION_COOKIE_SECURE", "false")

    # Brute-force protection
    MAX_LOGIN_ATTEMPTS = int(os.getenv("MAX_LOGIN_ATTEMPTS", "5"))
    LOCKOUT_MINUTES = int(os.getenv("LOCKOUT_MINUTES", "15"))

    # New device confirmation
    DEVICE_CONFIRMATION_TTL_MINUTES = int(os.getenv("DEVICE_CONFIRMATION_TTL_MINUTES", "10"))
    # Frontend page that renders the confirm/deny prompt, pending id is appended
    DEVICE_CONFIRMATION_URL = os.getenv("DEVICE_CONFIRMATION_URL")

    # Minimum retention per event category, in days
    RETENTION_DAYS = {
        "authentication": int(os.getenv("RETENTION_DAYS_AUTHENTICATION", "30")),
        "lockout": int(os.getenv("RETENTION_DAYS_LOCKOUT", "90")),
        "device": int(os.getenv("RETENTION_DAYS_DEVICE", "90")),
        "incident": int(os.getenv("RETENTION_DAYS_INCIDENT", "365")),
        "compliance": int(os.getenv("RETENTION_DAYS_COMPLIANCE", "365")),
    }

    # Notifications
    NOTIFICATIONS_ASYNC = _env_bool("NOTIFICATIONS_ASYNC", "true")
    NOTIFICATION_TIMEOUT_SECONDS = int(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "10"))
    NOTIFICATION_WORKERS = int(os.getenv("NOTIFICATION_WORKERS", "4"))
    NOTIFICATION_QUEUE_SIZE = int(os.getenv("NOTIFICATION_QUEUE_SIZE", "100"))
    SECURITY_ALERT_EMAIL = os.getenv("SECURITY_ALERT_EMAIL")

    # Email (SMTP)
    SMTP_HOST = os.getenv("SMTP_HOST")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
    SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL")
    SMTP_USE_TLS = _env_bool("SMTP_USE_TLS", "true")

    # Registration
    PASSWORD_MIN_LEN = int(os.getenv("PASSWORD_MIN_LEN", "12"))

    # Admin event listing
    EVENTS_PAGE_SIZE = 50
    EVENTS_MAX_PAGE_SIZE = 500

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Basic app settings
    DEBUG = False
