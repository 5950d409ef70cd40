"""Inventory and review bookkeeping for catalog documents.

``available_copies`` only ever moves through the conditional updates in this
module, which keeps ``0 <= available_copies <= total_copies`` true per
document without a read-then-write window.
"""

import logging
from typing import Any, Dict, Iterable, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .crud import get_book, update_book_fields, utcnow
from .exceptions import BookNotFoundError, ConflictError, ValidationFailedError
from .schemas import BookUpdate, ReviewCreate

logger = logging.getLogger(__name__)


def compute_rating(reviews: Iterable[Dict[str, Any]]) -> float:
    ratings = [review["rating"] for review in reviews]
    if not ratings:
        return 0
    return sum(ratings) / len(ratings)


async def reserve_copy(db, book_id: ObjectId) -> Optional[Dict[str, Any]]:
    """Take one copy off the shelf, or return None if none is left."""
    return await db.books.find_one_and_update(
        {"_id": book_id, "available_copies": {"$gte": 1}},
        {
            "$inc": {"available_copies": -1, "borrowed_count": 1},
            "$set": {"updated_at": utcnow()},
        },
        return_document=ReturnDocument.AFTER,
    )


async def unreserve_copy(db, book_id: ObjectId) -> None:
    """Undo a ``reserve_copy`` whose borrow request could not be approved."""
    await db.books.update_one(
        {"_id": book_id, "borrowed_count": {"$gte": 1}},
        {"$inc": {"available_copies": 1, "borrowed_count": -1}},
    )


RELEASE_ATTEMPTS = 5


async def _inventory(db, book_id: ObjectId) -> Optional[Dict[str, Any]]:
    return await db.books.find_one(
        {"_id": book_id}, {"total_copies": 1, "available_copies": 1}
    )


async def release_copy(db, book_id: ObjectId) -> bool:
    """Put one copy back on the shelf.

    The increment is conditional on the ``total_copies`` just read. When an
    inventory edit lands in between, the read is repeated instead of the
    returned copy being dropped.
    """
    for _ in range(RELEASE_ATTEMPTS):
        book = await _inventory(db, book_id)
        if book is None:
            logger.warning(f"Returned copy belongs to missing book {book_id}")
            return False
        if book["available_copies"] >= book["total_copies"]:
            logger.warning(f"Book {book_id} already has all copies on the shelf")
            return False
        result = await db.books.update_one(
            {
                "_id": book_id,
                "total_copies": book["total_copies"],
                "available_copies": {"$lt": book["total_copies"]},
            },
            {"$inc": {"available_copies": 1}, "$set": {"updated_at": utcnow()}},
        )
        if result.modified_count:
            return True
    logger.error(f"Could not release a copy of book {book_id} after {RELEASE_ATTEMPTS} attempts")
    return False


async def apply_book_update(db, book_id, book_update: BookUpdate) -> Dict[str, Any]:
    fields = book_update.model_dump(mode="json", exclude_unset=True, exclude_none=True)
    new_total = fields.pop("total_copies", None)
    if new_total is None:
        return await update_book_fields(db, book_id, fields)

    book = await get_book(db, book_id)
    delta = new_total - book["total_copies"]
    if book["available_copies"] + delta < 0:
        raise ValidationFailedError(
            "Total copies cannot be lower than the number of copies on loan"
        )
    fields["updated_at"] = utcnow()
    try:
        updated = await db.books.find_one_and_update(
            {
                "_id": book["_id"],
                "total_copies": book["total_copies"],
                "available_copies": {"$gte": max(0, -delta)},
            },
            {"$inc": {"total_copies": delta, "available_copies": delta}, "$set": fields},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise ConflictError("A book with this ISBN already exists")
    if updated is None:
        raise ConflictError("Book inventory changed, please retry")
    return updated


async def add_review(db, book_id, user_id: ObjectId, review: ReviewCreate) -> Dict[str, Any]:
    book = await get_book(db, book_id)
    if any(existing["user"] == user_id for existing in book.get("reviews", [])):
        raise ConflictError("Book already reviewed")

    entry = {
        "user": user_id,
        "rating": review.rating,
        "comment": review.comment,
        "created_at": utcnow(),
    }
    updated = await db.books.find_one_and_update(
        {"_id": book["_id"], "reviews.user": {"$ne": user_id}},
        {"$push": {"reviews": entry}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        if await db.books.count_documents({"_id": book["_id"]}) == 0:
            raise BookNotFoundError(book_id)
        raise ConflictError("Book already reviewed")

    reviews = updated["reviews"]
    rating = compute_rating(reviews)
    await db.books.update_one(
        {"_id": book["_id"]}, {"$set": {"ratings": rating, "updated_at": utcnow()}}
    )
    updated["ratings"] = rating
    logger.info(f"Review added to book {book['_id']}, rating now {rating:.2f}")
    return updated
