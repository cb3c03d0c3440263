import smtplib
from dataclasses import dataclass
from email.message import EmailMessage

import structlog

from security.notifications import DeliveryError, DeliveryReceipt, render_template
from utils import clock

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SmtpSettings:
    host: str = None
    port: int = 587
    username: str = None
    password: str = None
    from_email: str = None
    use_tls: bool = True
    timeout: int = 10

    @classmethod
    def from_config(cls, config) -> "SmtpSettings":
        return cls(
            host=config.get("SMTP_HOST"),
            port=config.get("SMTP_PORT", 587),
            username=config.get("SMTP_USERNAME"),
            password=config.get("SMTP_PASSWORD"),
            from_email=config.get("SMTP_FROM_EMAIL") or config.get("SMTP_USERNAME"),
            use_tls=config.get("SMTP_USE_TLS", True),
            timeout=config.get("NOTIFICATION_TIMEOUT_SECONDS", 10),
        )


class SmtpSender:
    """
    Delivery collaborator backed by SMTP. Runs on the dispatcher's worker
    threads, so it only holds settings captured at startup and never
    touches the Flask app or the database.
    """

    def __init__(self, settings: SmtpSettings):
        self.settings = settings

    def send(self, account_id, template_kind: str, payload: dict) -> DeliveryReceipt:
        s = self.settings
        to_email = payload.get("recipient")
        if not s.host or not s.from_email:
            raise DeliveryError("Email not configured")
        if not to_email:
            raise DeliveryError("No recipient address")

        subject, body = render_template(template_kind, payload)

        msg = EmailMessage()
        msg["From"] = s.from_email
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.set_content(body)

        try:
            with smtplib.SMTP(s.host, s.port, timeout=s.timeout) as server:
                if s.use_tls:
                    server.starttls()
                if s.username and s.password:
                    server.login(s.username, s.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryError(str(exc)) from exc

        logger.info("email_sent", account_id=account_id, template=template_kind)
        return DeliveryReceipt(template_kind=template_kind, recipient=to_email, delivered_at=clock.utcnow())
