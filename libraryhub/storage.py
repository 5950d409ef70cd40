import logging
from fastapi import Request
from motor.motor_asyncio import AsyncIOMotorClient

from .config import settings
from .models import ACTIVE_STATUSES

logger = logging.getLogger(__name__)

client: AsyncIOMotorClient = None


async def init_db():
    global client
    client = AsyncIOMotorClient(settings.mongodb_url)


async def close_db_connection():
    global client
    if client:
        client.close()
        client = None


def get_database():
    return client[settings.mongodb_db]


async def ensure_indexes(db):
    logger.info("Ensuring database indexes")
    await db.users.create_index("email", unique=True)
    await db.books.create_index("isbn", unique=True)
    # at most one pending or approved request per user and book
    await db.borrow_requests.create_index(
        [("user", 1), ("book", 1)],
        unique=True,
        partialFilterExpression={"status": {"$in": list(ACTIVE_STATUSES)}},
        name="active_request_per_user_book",
    )
    await db.borrow_requests.create_index([("status", 1), ("created_at", -1)])


def get_db(request: Request):
    return request.app.state.db
