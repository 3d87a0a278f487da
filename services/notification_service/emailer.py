import os
import smtplib
import logging
from dataclasses import dataclass
from email.mime.text import MIMEText

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def _get_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class SmtpSettings:
    host: str
    port: int
    user: str
    password: str
    from_email: str
    use_tls: bool
    use_ssl: bool
    use_auth: bool
    timeout: float

    @classmethod
    def from_env(cls) -> "SmtpSettings":
        """
        Required env:
          SMTP_HOST

        Optional env:
          SMTP_PORT (default 587), SMTP_USER, SMTP_PASS, FROM_EMAIL,
          SMTP_USE_TLS / SMTP_USE_SSL / SMTP_USE_AUTH (true/false),
          SMTP_TIMEOUT (seconds, default 10)
        """
        host = os.getenv("SMTP_HOST")
        if not host:
            raise RuntimeError("SMTP_HOST is not set")

        user = os.getenv("SMTP_USER", "")
        settings = cls(
            host=host,
            port=int(os.getenv("SMTP_PORT", "587")),
            user=user,
            password=os.getenv("SMTP_PASS", ""),
            from_email=os.getenv("FROM_EMAIL") or user or "orders@smarthubcomputers.com",
            use_tls=_get_bool("SMTP_USE_TLS"),
            use_ssl=_get_bool("SMTP_USE_SSL"),
            use_auth=_get_bool("SMTP_USE_AUTH"),
            timeout=float(os.getenv("SMTP_TIMEOUT", "10")),
        )
        if settings.use_auth and not (settings.user and settings.password):
            raise RuntimeError("SMTP_USE_AUTH=true but SMTP_USER/SMTP_PASS not set")
        return settings


def send_email(to_email: str, subject: str, html_body: str) -> None:
    cfg = SmtpSettings.from_env()

    msg = MIMEText(html_body, "html", "utf-8")
    msg["Subject"] = subject
    msg["From"] = cfg.from_email
    msg["To"] = to_email

    smtp_cls = smtplib.SMTP_SSL if cfg.use_ssl else smtplib.SMTP
    try:
        with smtp_cls(cfg.host, cfg.port, timeout=cfg.timeout) as s:
            s.ehlo()
            if cfg.use_tls and not cfg.use_ssl:
                s.starttls()
                s.ehlo()
            if cfg.use_auth:
                s.login(cfg.user, cfg.password)
            s.sendmail(cfg.from_email, [to_email], msg.as_string())
    except (smtplib.SMTPException, OSError) as e:
        logger.exception("Email send failed to=%s error=%r", to_email, e)
        raise

    logger.info("Email sent to=%s subject=%s", to_email, subject)
