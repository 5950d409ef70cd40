"""Mail worker: drains the outbound email queue into SMTP.

Run with ``python -m libraryhub.mailer``.
"""

import asyncio
import json
import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Dict, Optional

import aio_pika

from .config import Settings, settings
from .internal_messaging import RabbitMQManager

logger = logging.getLogger(__name__)


def build_message(payload: Dict[str, Any], config: Settings = settings) -> EmailMessage:
    for key in ("email", "subject", "html"):
        if not payload.get(key):
            raise ValueError(f"Email payload is missing '{key}'")
    message = EmailMessage()
    message["From"] = f"{config.email_from_name} <{config.smtp_user or 'noreply@libraryhub.local'}>"
    message["To"] = payload["email"]
    message["Subject"] = payload["subject"]
    message.set_content("This email requires an HTML capable client.")
    message.add_alternative(payload["html"], subtype="html")
    return message


def send_smtp(message: EmailMessage, config: Settings = settings) -> None:
    with smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=30) as smtp:
        if config.smtp_starttls:
            smtp.starttls()
        if config.smtp_user and config.smtp_password:
            smtp.login(config.smtp_user, config.smtp_password)
        smtp.send_message(message)


class MailDispatcher:
    def __init__(self, config: Settings = settings):
        self.config = config

    async def deliver(self, payload: Dict[str, Any]) -> None:
        message = build_message(payload, self.config)
        await asyncio.to_thread(send_smtp, message, self.config)
        logger.info(f"Email sent to {payload['email']}: {payload['subject']}")

    async def handle_message(self, message: aio_pika.IncomingMessage) -> None:
        # Malformed payloads are dropped; SMTP failures go back on the queue once.
        try:
            payload = json.loads(message.body.decode())
            build_message(payload, self.config)
        except (json.JSONDecodeError, ValueError) as e:
            logger.error(f"Dropping malformed email message: {e}")
            await message.reject(requeue=False)
            return

        try:
            await self.deliver(payload)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Error sending email to {payload['email']}: {e}")
            await message.reject(requeue=not message.redelivered)
            return
        await message.ack()


async def run_worker(manager: Optional[RabbitMQManager] = None) -> None:
    manager = manager or RabbitMQManager()
    dispatcher = MailDispatcher()
    await manager.connect()
    try:
        await manager.consume(settings.email_queue, dispatcher.handle_message)
        await asyncio.Future()
    finally:
        await manager.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_worker())
