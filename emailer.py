import logging
import smtplib
from email.message import EmailMessage
from typing import Optional, Protocol, Sequence, Tuple

logger = logging.getLogger("throttle.worker.mail")


class Mailer(Protocol):
    def send(
        self, recipients: Sequence[str], subject: str, body: str
    ) -> Tuple[bool, Optional[str]]:
        ...


class SmtpMailer:
    """
    Plain-text SMTP delivery. Returns (sent, error) and never raises.
    """

    def __init__(
        self,
        host: Optional[str],
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        from_email: Optional[str] = None,
        use_tls: bool = True,
        timeout: float = 10,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_email = from_email or username
        self.use_tls = use_tls
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "SmtpMailer":
        return cls(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            username=settings.SMTP_USERNAME,
            password=settings.SMTP_PASSWORD,
            from_email=settings.SMTP_FROM_EMAIL,
            use_tls=settings.SMTP_USE_TLS,
        )

    def send(
        self, recipients: Sequence[str], subject: str, body: str
    ) -> Tuple[bool, Optional[str]]:
        if not self.host or not self.from_email:
            return False, "Email not configured"
        if not recipients:
            return False, "No recipients"

        msg = EmailMessage()
        msg["From"] = self.from_email
        msg["To"] = ", ".join(recipients)
        msg["Subject"] = subject
        msg.set_content(body)

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(msg)
            return True, None
        except (smtplib.SMTPException, OSError) as exc:
            return False, str(exc)
