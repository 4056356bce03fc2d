import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Protocol

from app.core.config import Settings

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    async def send(self, to: str, subject: str, body: str) -> None: ...


class SmtpEmailSender:
    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        mail_from: str = "no-reply@tasks.local",
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.mail_from = mail_from

    def _send_sync(self, message: EmailMessage):
        with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password or "")
            smtp.send_message(message)

    async def send(self, to: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message["From"] = self.mail_from
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)
        # smtplib blocks; keep it off the event loop
        await asyncio.to_thread(self._send_sync, message)
        logger.info(f"Sent email to {to}: {subject}")


class LogEmailSender:
    """Used when no SMTP host is configured."""

    async def send(self, to: str, subject: str, body: str) -> None:
        logger.info(f"Email to {to}: {subject}\n{body}")


class EmailService:
    def __init__(self, sender: EmailSender):
        self.sender = sender

    async def send_task_assignment_notification(self, assignee_email: str, task_title: str):
        # Sending twice for the same assignment only repeats the same message
        await self.sender.send(
            assignee_email,
            f"New task assigned: {task_title}",
            f'You have been assigned the task "{task_title}".',
        )


def build_email_service(settings: Settings) -> EmailService:
    if not settings.smtp_host:
        return EmailService(LogEmailSender())
    return EmailService(
        SmtpEmailSender(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            mail_from=settings.mail_from,
        )
    )
