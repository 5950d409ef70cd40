import logging
import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .exceptions import (
    BookNotFoundError,
    BorrowRequestNotFoundError,
    ConflictError,
    UserNotFoundError,
    ValidationFailedError,
)
from .models import ACTIVE_STATUSES, Role
from .schemas import (
    BookCreate,
    BookFilterParams,
    UserCreate,
    UserFilterParams,
)

logger = logging.getLogger(__name__)

BOOK_SORT_OPTIONS = {
    "price_asc": [("price", 1)],
    "price_desc": [("price", -1)],
    "rating_asc": [("ratings", 1)],
    "rating_desc": [("ratings", -1)],
}
NEWEST_FIRST = [("created_at", -1)]

USER_SUMMARY_FIELDS = {"full_name": 1, "email": 1, "profile_picture": 1}
BOOK_SUMMARY_FIELDS = {"title": 1, "author": 1, "image": 1}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """MongoDB hands back naive UTC datetimes unless the client is tz-aware."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_object_id(value, label: str = "resource") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not ObjectId.is_valid(value):
        raise ValidationFailedError(f"Invalid {label} id")
    return ObjectId(value)


def search_pattern(search: str) -> str:
    return re.sub(r"\s+", ".*", search.strip())


def total_pages(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0


# Books


async def create_book(db, book: BookCreate) -> Dict[str, Any]:
    now = utcnow()
    document = book.model_dump(mode="json", exclude_none=True)
    document.update(
        available_copies=book.total_copies,
        borrowed_count=0,
        ratings=0,
        reviews=[],
        created_at=now,
        updated_at=now,
    )
    try:
        result = await db.books.insert_one(document)
    except DuplicateKeyError:
        raise ConflictError("A book with this ISBN already exists")
    document["_id"] = result.inserted_id
    return document


async def get_book(db, book_id) -> Dict[str, Any]:
    book = await db.books.find_one({"_id": parse_object_id(book_id, "book")})
    if book is None:
        raise BookNotFoundError(book_id)
    return book


async def list_books(db, params: BookFilterParams) -> Tuple[int, List[Dict[str, Any]]]:
    query: Dict[str, Any] = {}
    if params.search and params.search.strip():
        pattern = search_pattern(params.search)
        query["$or"] = [
            {"title": {"$regex": pattern, "$options": "i"}},
            {"author": {"$regex": pattern, "$options": "i"}},
        ]
    if params.category:
        query["category"] = params.category
    if params.min_rating:
        query["ratings"] = {"$gte": params.min_rating}

    total = await db.books.count_documents(query)
    cursor = (
        db.books.find(query)
        .sort(BOOK_SORT_OPTIONS.get(params.sort, NEWEST_FIRST))
        .skip((params.page - 1) * params.limit)
        .limit(params.limit)
    )
    return total, [book async for book in cursor]


async def update_book_fields(db, book_id, fields: Dict[str, Any]) -> Dict[str, Any]:
    fields["updated_at"] = utcnow()
    try:
        book = await db.books.find_one_and_update(
            {"_id": parse_object_id(book_id, "book")},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise ConflictError("A book with this ISBN already exists")
    if book is None:
        raise BookNotFoundError(book_id)
    return book


async def delete_book(db, book_id) -> None:
    result = await db.books.delete_one({"_id": parse_object_id(book_id, "book")})
    if result.deleted_count == 0:
        raise BookNotFoundError(book_id)


# Users


async def create_user(db, user: UserCreate, hashed_password: str) -> Dict[str, Any]:
    document = user.model_dump(exclude={"password"}, exclude_none=True)
    document.update(
        email=user.email.lower(),
        password=hashed_password,
        role=Role.USER.value,
        favorite_books=[],
        borrowed_books=[],
        created_at=utcnow(),
    )
    try:
        result = await db.users.insert_one(document)
    except DuplicateKeyError:
        raise ConflictError("You are already registered")
    document["_id"] = result.inserted_id
    return document


async def get_user(db, user_id) -> Dict[str, Any]:
    user = await db.users.find_one({"_id": parse_object_id(user_id, "user")})
    if user is None:
        raise UserNotFoundError(user_id)
    return user


async def get_user_by_email(db, email: str) -> Optional[Dict[str, Any]]:
    return await db.users.find_one({"email": email.lower()})


async def list_users(db, params: UserFilterParams) -> Tuple[int, List[Dict[str, Any]]]:
    query: Dict[str, Any] = {}
    if params.search and params.search.strip():
        pattern = search_pattern(params.search)
        query["$or"] = [
            {"full_name": {"$regex": pattern, "$options": "i"}},
            {"email": {"$regex": pattern, "$options": "i"}},
        ]
    if params.role:
        query["role"] = params.role

    total = await db.users.count_documents(query)
    cursor = (
        db.users.find(query)
        .sort(NEWEST_FIRST)
        .skip((params.page - 1) * params.limit)
        .limit(params.limit)
    )
    return total, [user async for user in cursor]


async def update_user_fields(db, user_id, fields: Dict[str, Any]) -> Dict[str, Any]:
    if "email" in fields:
        fields["email"] = fields["email"].lower()
    try:
        user = await db.users.find_one_and_update(
            {"_id": parse_object_id(user_id, "user")},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise ConflictError("Email is already in use")
    if user is None:
        raise UserNotFoundError(user_id)
    return user


async def delete_user(db, user_id) -> None:
    result = await db.users.delete_one({"_id": parse_object_id(user_id, "user")})
    if result.deleted_count == 0:
        raise UserNotFoundError(user_id)


# Borrow requests


async def create_borrow_request(db, document: Dict[str, Any]) -> Dict[str, Any]:
    try:
        result = await db.borrow_requests.insert_one(document)
    except DuplicateKeyError:
        raise ConflictError("You already have an active request for this book")
    document["_id"] = result.inserted_id
    return document


async def get_borrow_request(db, request_id) -> Dict[str, Any]:
    borrow_request = await db.borrow_requests.find_one(
        {"_id": parse_object_id(request_id, "borrow request")}
    )
    if borrow_request is None:
        raise BorrowRequestNotFoundError(request_id)
    return borrow_request


async def find_active_request(db, user_id: ObjectId, book_id: ObjectId):
    return await db.borrow_requests.find_one(
        {"user": user_id, "book": book_id, "status": {"$in": list(ACTIVE_STATUSES)}}
    )


async def transition_borrow_request(
    db, request_id: ObjectId, from_status: str, fields: Dict[str, Any]
) -> Optional[Dict[str, Any]]:
    """Apply ``fields`` only while the request is still in ``from_status``.

    Returns the updated document, or None when another writer moved the
    request first.
    """
    fields["updated_at"] = utcnow()
    return await db.borrow_requests.find_one_and_update(
        {"_id": request_id, "status": from_status},
        {"$set": fields},
        return_document=ReturnDocument.AFTER,
    )


async def list_borrow_requests(db, query: Optional[Dict[str, Any]] = None):
    cursor = db.borrow_requests.find(query or {}).sort(NEWEST_FIRST)
    return [borrow_request async for borrow_request in cursor]


async def populate_borrow_requests(
    db, borrow_requests: List[Dict[str, Any]], with_user: bool = True
) -> List[Dict[str, Any]]:
    """Replace user/book references with summary sub-documents."""
    book_ids = list({r["book"] for r in borrow_requests})
    books = {
        b["_id"]: b
        async for b in db.books.find({"_id": {"$in": book_ids}}, BOOK_SUMMARY_FIELDS)
    }
    users = {}
    if with_user:
        user_ids = list({r["user"] for r in borrow_requests})
        users = {
            u["_id"]: u
            async for u in db.users.find({"_id": {"$in": user_ids}}, USER_SUMMARY_FIELDS)
        }

    populated = []
    for borrow_request in borrow_requests:
        item = dict(borrow_request)
        if item["book"] in books:
            item["book"] = books[item["book"]]
        if with_user and item["user"] in users:
            item["user"] = users[item["user"]]
        populated.append(item)
    return populated
