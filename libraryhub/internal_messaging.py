import json
import logging
from typing import Awaitable, Callable, Optional
import aio_pika
from fastapi import FastAPI

from .config import settings

logger = logging.getLogger(__name__)


class RabbitMQManager:
    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.rabbitmq_url
        self.connection = None
        self.channel = None

    @property
    def connected(self) -> bool:
        return self.channel is not None

    async def connect(self):
        logger.info("Initializing RabbitMQ connection")
        try:
            self.connection = await aio_pika.connect_robust(self.url)
            self.channel = await self.connection.channel()
            logger.info("RabbitMQ connection established successfully")
        except Exception as e:
            logger.error(f"Failed to connect to RabbitMQ: {e}")
            raise

    async def close(self):
        if self.connection:
            await self.connection.close()
            self.connection = None
            self.channel = None
            logger.info("RabbitMQ connection closed")

    async def setup_queue(self, queue_name: str):
        queue = await self.channel.declare_queue(queue_name, durable=True)
        logger.info(f"Queue '{queue_name}' set up successfully")
        return queue

    async def publish_message(self, queue_name: str, message: dict | str):
        if not isinstance(message, str):
            message = json.dumps(message)
        await self.channel.default_exchange.publish(
            aio_pika.Message(
                body=message.encode(),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            ),
            routing_key=queue_name,
        )
        logger.info(f"Message published to queue: {queue_name}")

    async def consume(
        self,
        queue_name: str,
        callback: Callable[[aio_pika.IncomingMessage], Awaitable[None]],
        prefetch_count: int = 10,
    ):
        await self.channel.set_qos(prefetch_count=prefetch_count)
        queue = await self.setup_queue(queue_name)
        await queue.consume(callback)
        logger.info(f"Started consuming messages from queue: {queue_name}")
        return queue


async def setup_messaging(app: FastAPI) -> RabbitMQManager:
    rabbitmq_manager = RabbitMQManager()
    await rabbitmq_manager.connect()
    await rabbitmq_manager.setup_queue(settings.email_queue)
    app.state.rabbitmq_manager = rabbitmq_manager
    logger.info("All queues set up and ready to publish messages")
    return rabbitmq_manager


async def cleanup_messaging(app: FastAPI):
    rabbitmq_manager = getattr(app.state, "rabbitmq_manager", None)
    if rabbitmq_manager:
        await rabbitmq_manager.close()
