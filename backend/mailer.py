import logging
import smtplib
from collections import deque
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from errors import Internal

logger = logging.getLogger(__name__)


class MailerNotConfigured(Internal):
    pass


class MailDeliveryFailed(Internal):
    pass


class Mailer:
    """SMTP sender. In dev mode messages are logged and kept in `outbox` instead."""

    def __init__(
        self,
        host: str = '',
        port: int = 0,
        user: str = '',
        password: str = '',
        sender: str = '',
        dev_mode: bool = False,
    ) -> None:
        self.host = host
        self.port = int(port or 0)
        self.user = user
        self.password = password
        self.sender = sender or user
        self.dev_mode = dev_mode
        self.outbox = deque(maxlen=200)

    @classmethod
    def from_config(cls, config) -> 'Mailer':
        return cls(
            host=config.get('SMTP_HOST', ''),
            port=config.get('SMTP_PORT', 0),
            user=config.get('SMTP_USER', ''),
            password=config.get('SMTP_PASS', ''),
            sender=config.get('SMTP_FROM', ''),
            dev_mode=bool(config.get('DEV_EMAIL_MODE')),
        )

    def config_error(self) -> Optional[str]:
        if self.dev_mode:
            return None
        missing = []
        if not self.host:
            missing.append('SMTP_HOST')
        if not self.port:
            missing.append('SMTP_PORT')
        if not self.user:
            missing.append('SMTP_USER')
        if not self.password:
            missing.append('SMTP_PASS')
        if not self.sender:
            missing.append('SMTP_FROM')
        if not missing:
            return None
        return f"Missing SMTP configuration: {', '.join(missing)}"

    def ensure_configured(self) -> None:
        error = self.config_error()
        if error:
            raise MailerNotConfigured(error, 'MailerNotConfigured')

    def send(self, to: str, subject: str, text_body: str, html_body: Optional[str] = None) -> None:
        if self.dev_mode:
            logger.info('[dev-email] to=%s subject=%s\n%s', to, subject, text_body)
            self.outbox.append({'to': to, 'subject': subject, 'text': text_body, 'html': html_body})
            return

        self.ensure_configured()

        if html_body:
            msg = MIMEMultipart('alternative')
            msg.attach(MIMEText(text_body, 'plain', 'utf-8'))
            msg.attach(MIMEText(html_body, 'html', 'utf-8'))
        else:
            msg = MIMEText(text_body, 'plain', 'utf-8')
        msg['Subject'] = subject
        msg['From'] = self.sender
        msg['To'] = to

        try:
            with smtplib.SMTP(self.host, self.port) as server:
                server.starttls()
                server.login(self.user, self.password)
                server.sendmail(self.sender, [to], msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            logger.error('Mail delivery to %s failed: %s', to, exc)
            raise MailDeliveryFailed(f'Could not deliver mail to {to}', 'MailDeliveryFailed')
