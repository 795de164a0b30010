"""
Sends completion notifications over SMTP.
"""

import asyncio
import logging
import smtplib
import ssl
from email.message import EmailMessage

from qb_cloud_sync.models.config import MailerSettings
from qb_cloud_sync.models.task import Task
from qb_cloud_sync.utils.formatting import format_duration, format_size, format_timestamp

log = logging.getLogger(__name__)


class Mailer:
    """SMTP client for "upload completed" e-mails; a no-op when not configured."""

    def __init__(self, settings: MailerSettings, timeout: float = 30.0):
        self.settings = settings
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    def build_message(self, task: Task, remote_destination: str) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = f"[qb-cloud-sync] Archived: {task.name}"
        message["From"] = self.settings.sender or self.settings.user
        message["To"] = ", ".join(self.settings.recipients)

        duration = (
            format_duration(task.upload_duration_ms / 1000)
            if task.upload_duration_ms is not None
            else "-"
        )
        message.set_content(
            "\n".join(
                [
                    f"'{task.name}' was uploaded, verified and cleaned up.",
                    "",
                    f"Destination:   {remote_destination}",
                    f"Size:          {format_size(task.upload_size)}",
                    f"Upload time:   {duration}",
                    f"Upload tries:  {task.upload_attempts}",
                    f"Completed at:  {format_timestamp(task.completed_at)}",
                    f"Hash:          {task.hash}",
                ]
            )
        )
        return message

    def _send_sync(self, message: EmailMessage) -> None:
        settings = self.settings
        if settings.secure:
            smtp: smtplib.SMTP = smtplib.SMTP_SSL(
                settings.host,
                settings.port,
                timeout=self.timeout,
                context=ssl.create_default_context(),
            )
        else:
            smtp = smtplib.SMTP(settings.host, settings.port, timeout=self.timeout)
        with smtp:
            smtp.ehlo()
            if not settings.secure and smtp.has_extn("starttls"):
                smtp.starttls(context=ssl.create_default_context())
                smtp.ehlo()
            if settings.user:
                smtp.login(settings.user, settings.password)
            smtp.send_message(message)

    async def send_completion(self, task: Task, remote_destination: str) -> bool:
        """
        Sends the completion e-mail for a task.

        Delivery problems are logged and reported through the return value;
        they never raise.
        """
        if not self.enabled:
            return False

        try:
            message = self.build_message(task, remote_destination)
            await asyncio.to_thread(self._send_sync, message)
        except (smtplib.SMTPException, OSError, ValueError) as e:
            log.warning(f"[yellow]Could not send completion e-mail for '{task.name}': {e}[/yellow]")
            return False

        log.info(f"Sent completion e-mail for '{task.name}'")
        return True
