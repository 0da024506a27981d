# agrimarket/services/notification_service.py
import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Dict, Optional, Set
import aiohttp
from ..config import Config
from ..utils.messages import Messages
from ..utils.validators import to_international

SMS = "sms"
EMAIL = "email"

class NotificationService:
    """Fire-and-forget SMS and email delivery.

    ``notify`` schedules delivery on the running loop and returns at once;
    a failed delivery is logged and never reaches the caller.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._tasks: Set[asyncio.Task] = set()

    def notify(self, channel: str, recipient: Optional[str], template_kind: str,
               data: Dict[str, Any]) -> Optional[asyncio.Task]:
        if not recipient:
            self.logger.debug(f"No {channel} recipient for {template_kind}, skipped")
            return None

        try:
            subject, body = Messages.render(template_kind, data)
        except (KeyError, ValueError) as e:
            self.logger.error(f"Cannot render {template_kind} notification: {e}")
            return None

        if channel == SMS:
            coro = self.send_sms(recipient, body)
        elif channel == EMAIL:
            coro = self.send_email(recipient, subject, body)
        else:
            self.logger.error(f"Unknown notification channel: {channel}")
            return None

        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def notify_contacts(self, phone: Optional[str], email: Optional[str],
                        template_kind: str, data: Dict[str, Any]) -> None:
        """Send one template over every channel the contact has"""
        self.notify(SMS, phone, template_kind, data)
        self.notify(EMAIL, email, template_kind, data)

    def _on_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error(f"Notification delivery failed: {error}")

    async def drain(self):
        """Wait for pending deliveries, used on shutdown"""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def send_sms(self, phone: str, message: str):
        if not Config.SMS_API_KEY:
            self.logger.warning("SMS gateway not configured, message dropped")
            return

        data = {
            "username": Config.SMS_USERNAME,
            "to": f"+{to_international(phone)}",
            "message": message,
        }
        if Config.SMS_SENDER_ID:
            data["from"] = Config.SMS_SENDER_ID

        headers = {"apiKey": Config.SMS_API_KEY, "Accept": "application/json"}
        timeout = aiohttp.ClientTimeout(total=Config.PAYMENT_TIMEOUT)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(Config.SMS_API_URL, data=data, headers=headers) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise RuntimeError(f"SMS gateway returned {response.status}: {text}")

        self.logger.info(f"SMS sent to {phone}")

    async def send_email(self, recipient: str, subject: str, body: str):
        if not Config.SMTP_HOST:
            self.logger.warning("SMTP not configured, email dropped")
            return

        message = EmailMessage()
        message["From"] = Config.SMTP_FROM
        message["To"] = recipient
        message["Subject"] = subject
        message.set_content(body)

        await asyncio.to_thread(self._send_smtp, message)
        self.logger.info(f"Email sent to {recipient}")

    @staticmethod
    def _send_smtp(message: EmailMessage):
        with smtplib.SMTP(Config.SMTP_HOST, Config.SMTP_PORT, timeout=30) as smtp:
            smtp.starttls()
            if Config.SMTP_USER:
                smtp.login(Config.SMTP_USER, Config.SMTP_PASSWORD)
            smtp.send_message(message)
