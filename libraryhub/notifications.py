import asyncio
import html
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Set

from .config import settings
from .exceptions import NotificationError
from .internal_messaging import RabbitMQManager

logger = logging.getLogger(__name__)


LAYOUT = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{subject}</title>
    <style>
        body {{ font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif; line-height: 1.6; color: #333; background-color: #f9f9f9; margin: 0; padding: 0; }}
        .header {{ text-align: center; padding: 20px 0; background-color: #3b82f6; color: white; border-radius: 8px 8px 0 0; }}
        .logo {{ font-size: 24px; font-weight: bold; margin-bottom: 10px; }}
        .content {{ padding: 20px; }}
        .button {{ display: inline-block; padding: 12px 24px; background-color: #3b82f6; color: white; text-decoration: none; border-radius: 5px; margin: 20px 0; }}
        .footer {{ text-align: center; padding: 20px; margin-top: 20px; border-top: 1px solid #eee; color: #666; font-size: 14px; }}
        .code {{ background-color: #f3f4f6; padding: 10px; border-radius: 5px; font-family: monospace; font-size: 16px; margin: 10px 0; }}
    </style>
</head>
<body>
    <div>
        <div class="header">
            <div class="logo">LibraryHub</div>
            <h2>{subject}</h2>
        </div>
        <div class="content">
            {body}
        </div>
        <div class="footer">
            <p>If you didn't request this email, please ignore it.</p>
            <p>&copy; {year} LibraryHub. All rights reserved.</p>
        </div>
    </div>
</body>
</html>
"""


def render_layout(subject: str, body: str) -> str:
    return LAYOUT.format(
        subject=html.escape(subject), body=body, year=datetime.now().year
    )


def _format_date(value: Optional[datetime]) -> str:
    return value.strftime("%d %b %Y") if value else "-"


class EmailTemplates:
    """HTML bodies for the emails LibraryHub sends."""

    @staticmethod
    def welcome(user: Dict[str, Any]) -> str:
        return f"""
        <h3>Welcome to LibraryHub!</h3>
        <p>Hello {html.escape(user['full_name'])},</p>
        <p>Thank you for joining LibraryHub! Your account has been successfully created.</p>
        <p>You can now:</p>
        <ul>
            <li>Browse our extensive book collection</li>
            <li>Borrow books from our library</li>
            <li>Add books to your favorites</li>
            <li>Write reviews and ratings</li>
        </ul>
        <p style="text-align: center">
            <a href="{settings.frontend_url}/dashboard" class="button">Get Started</a>
        </p>
        """

    @staticmethod
    def borrow_approved(
        user: Dict[str, Any], book: Dict[str, Any], return_date: Optional[datetime] = None
    ) -> str:
        if return_date is None:
            return_date = datetime.now(timezone.utc) + timedelta(days=14)
        return f"""
        <h3>Borrow Request Approved</h3>
        <p>Hello {html.escape(user['full_name'])},</p>
        <p>Your request to borrow "<strong>{html.escape(book['title'])}</strong>" has been approved!</p>
        <p>Please visit the library to collect your book within the next 24 hours.</p>
        <p><strong>Expected Return Date:</strong> {_format_date(return_date)}</p>
        <p>Thank you for using LibraryHub!</p>
        """

    @staticmethod
    def borrow_rejected(
        user: Dict[str, Any], book: Dict[str, Any], reason: Optional[str] = None
    ) -> str:
        reason_html = (
            f"<p><strong>Reason:</strong> {html.escape(reason)}</p>" if reason else ""
        )
        return f"""
        <h3>Borrow Request Update</h3>
        <p>Hello {html.escape(user['full_name'])},</p>
        <p>Your request to borrow "<strong>{html.escape(book['title'])}</strong>" could not be approved at this time.</p>
        {reason_html}
        <p>You can try again later or contact library staff for more information.</p>
        <p>Thank you for your understanding.</p>
        """

    @staticmethod
    def password_reset(reset_url: str, user: Dict[str, Any]) -> str:
        return f"""
        <h3>Password Reset Request</h3>
        <p>Hello {html.escape(user['full_name'])},</p>
        <p>You requested to reset your password. Click the button below to proceed:</p>
        <p style="text-align: center;">
            <a href="{reset_url}" class="button">Reset Password</a>
        </p>
        <p>Or copy and paste this link in your browser:</p>
        <div class="code">{reset_url}</div>
        <p>This link will expire in 1 hour for security reasons.</p>
        """


class NotificationGateway:
    """Hands outbound emails to the mail worker through RabbitMQ.

    ``send`` is fire-and-forget: it schedules the publish on the running
    loop and returns the task. Failures are logged from the task's done
    callback and never reach the caller. ``deliver`` is the awaited variant
    for flows that must know whether the email left.
    """

    def __init__(
        self,
        messaging: Optional[RabbitMQManager] = None,
        queue_name: Optional[str] = None,
    ):
        self.messaging = messaging
        self.queue_name = queue_name or settings.email_queue
        self.pending: Set[asyncio.Task] = set()

    async def deliver(self, email: str, subject: str, html_body: str) -> None:
        if self.messaging is None or not self.messaging.connected:
            raise NotificationError("Email could not be sent")
        try:
            await self.messaging.publish_message(
                self.queue_name,
                {
                    "email": email,
                    "subject": subject,
                    "html": render_layout(subject, html_body),
                },
            )
        except Exception as e:
            raise NotificationError(f"Email could not be sent: {e}") from e
        logger.info(f"Email '{subject}' queued for {email}")

    def send(self, email: str, subject: str, html_body: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(
            self.deliver(email, subject, html_body)
        )
        self.pending.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self.pending.discard(task)
        if task.cancelled():
            logger.warning("Email task cancelled before delivery")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Failed to send email: {exc}")

    async def drain(self) -> None:
        """Wait for in-flight sends; used on shutdown and in tests."""
        if self.pending:
            await asyncio.gather(*list(self.pending), return_exceptions=True)
