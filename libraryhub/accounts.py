import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from bson import ObjectId

from .crud import get_user, parse_object_id
from .exceptions import ConflictError, UserNotFoundError

logger = logging.getLogger(__name__)


def history_entry(borrow_request: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "request": borrow_request["_id"],
        "book": borrow_request["book"],
        "borrowed_date": borrow_request.get("borrow_date"),
        "return_date": borrow_request.get("expected_return_date"),
        "status": borrow_request["status"],
    }


async def push_history_entry(db, borrow_request: Dict[str, Any]) -> None:
    await db.users.update_one(
        {"_id": borrow_request["user"]},
        {"$push": {"borrowed_books": history_entry(borrow_request)}},
    )


async def set_history_status(
    db,
    borrow_request: Dict[str, Any],
    borrowed_date: Optional[datetime] = None,
) -> bool:
    """Mirror the request's status onto the user's matching history entry.

    Entries are matched on the borrow request id, so earlier borrow cycles
    of the same book keep their own status.
    """
    fields = {"borrowed_books.$.status": borrow_request["status"]}
    if borrowed_date is not None:
        fields["borrowed_books.$.borrowed_date"] = borrowed_date
    result = await db.users.update_one(
        {"_id": borrow_request["user"], "borrowed_books.request": borrow_request["_id"]},
        {"$set": fields},
    )
    if result.matched_count == 0:
        logger.warning(
            f"No history entry for request {borrow_request['_id']} on user "
            f"{borrow_request['user']}, rebuilding"
        )
        await rebuild_borrow_history(db, borrow_request["user"])
        return False
    return True


async def rebuild_borrow_history(db, user_id: ObjectId) -> List[Dict[str, Any]]:
    """Recompute the embedded history from the user's borrow requests."""
    cursor = db.borrow_requests.find({"user": user_id}).sort("created_at", 1)
    entries = [history_entry(borrow_request) async for borrow_request in cursor]
    await db.users.update_one({"_id": user_id}, {"$set": {"borrowed_books": entries}})
    return entries


async def load_profile(db, user_id) -> Dict[str, Any]:
    user = await get_user(db, user_id)
    user["borrowed_books"] = await rebuild_borrow_history(db, user["_id"])
    return user


async def favorite_ids(db, user_id: Optional[ObjectId]) -> Set[ObjectId]:
    if user_id is None:
        return set()
    user = await db.users.find_one({"_id": user_id}, {"favorite_books": 1})
    if user is None:
        return set()
    return set(user.get("favorite_books", []))


async def add_favorite(db, user_id: ObjectId, book_id) -> None:
    book_oid = parse_object_id(book_id, "book")
    result = await db.users.update_one(
        {"_id": user_id, "favorite_books": {"$ne": book_oid}},
        {"$push": {"favorite_books": book_oid}},
    )
    if result.matched_count == 0:
        await get_user(db, user_id)
        raise ConflictError("Book already in favorites")


async def remove_favorite(db, user_id: ObjectId, book_id) -> None:
    book_oid = parse_object_id(book_id, "book")
    result = await db.users.update_one(
        {"_id": user_id, "favorite_books": book_oid},
        {"$pull": {"favorite_books": book_oid}},
    )
    if result.matched_count == 0:
        if await db.users.count_documents({"_id": user_id}) == 0:
            raise UserNotFoundError(user_id)
        raise ConflictError("Book not in your favorites")
