import pytest
from bson import ObjectId

from conftest import make_book
from libraryhub import catalog, crud
from libraryhub.exceptions import BookNotFoundError, ConflictError, ValidationFailedError
from libraryhub.schemas import BookFilterParams, BookUpdate, ReviewCreate


def test_compute_rating():
    assert catalog.compute_rating([]) == 0
    assert catalog.compute_rating([{"rating": 5}, {"rating": 2}]) == pytest.approx(3.5)


@pytest.mark.asyncio
async def test_create_book_defaults(db):
    book = await make_book(db, total_copies=4)

    stored = await crud.get_book(db, book["_id"])
    assert stored["available_copies"] == 4
    assert stored["borrowed_count"] == 0
    assert stored["ratings"] == 0
    assert stored["reviews"] == []
    assert stored["category"] == "Science Fiction"


@pytest.mark.asyncio
async def test_duplicate_isbn(db, book):
    with pytest.raises(ConflictError):
        await make_book(db, isbn=book["isbn"])


@pytest.mark.asyncio
async def test_get_book_invalid_id(db):
    with pytest.raises(ValidationFailedError):
        await crud.get_book(db, "1234")
    with pytest.raises(BookNotFoundError):
        await crud.get_book(db, ObjectId())


@pytest.mark.asyncio
async def test_list_books_filters(db):
    await make_book(db, isbn="9780000000001", title="Cheap", price=10, category="History")
    await make_book(db, isbn="9780000000002", title="Pricey", price=90, category="History")
    await make_book(db, isbn="9780000000003", title="Other", price=50, category="Fantasy")

    total, books = await crud.list_books(
        db, BookFilterParams(category="History", sort="price_desc")
    )

    assert total == 2
    assert [b["title"] for b in books] == ["Pricey", "Cheap"]


@pytest.mark.asyncio
async def test_reserve_and_release(db):
    book = await make_book(db, total_copies=1)

    assert (await catalog.reserve_copy(db, book["_id"]))["available_copies"] == 0
    assert await catalog.reserve_copy(db, book["_id"]) is None

    assert await catalog.release_copy(db, book["_id"]) is True
    # already full
    assert await catalog.release_copy(db, book["_id"]) is False

    stored = await crud.get_book(db, book["_id"])
    assert stored["available_copies"] == 1
    assert stored["borrowed_count"] == 1


@pytest.mark.asyncio
async def test_release_missing_book(db):
    assert await catalog.release_copy(db, ObjectId()) is False


@pytest.mark.asyncio
async def test_unreserve_restores_counts(db):
    book = await make_book(db, total_copies=2)
    await catalog.reserve_copy(db, book["_id"])

    await catalog.unreserve_copy(db, book["_id"])

    stored = await crud.get_book(db, book["_id"])
    assert stored["available_copies"] == 2
    assert stored["borrowed_count"] == 0


@pytest.mark.asyncio
async def test_book_update_adjusts_available_copies(db):
    book = await make_book(db, total_copies=3)
    await catalog.reserve_copy(db, book["_id"])

    updated = await catalog.apply_book_update(
        db, book["_id"], BookUpdate(total_copies=5, title="Second Edition")
    )

    assert updated["total_copies"] == 5
    assert updated["available_copies"] == 4
    assert updated["title"] == "Second Edition"

    updated = await catalog.apply_book_update(db, book["_id"], BookUpdate(total_copies=1))
    assert updated["total_copies"] == 1
    assert updated["available_copies"] == 0


@pytest.mark.asyncio
async def test_book_update_cannot_drop_below_loans(db):
    book = await make_book(db, total_copies=2)
    await catalog.reserve_copy(db, book["_id"])
    await catalog.reserve_copy(db, book["_id"])

    with pytest.raises(ValidationFailedError):
        await catalog.apply_book_update(db, book["_id"], BookUpdate(total_copies=1))

    stored = await crud.get_book(db, book["_id"])
    assert stored["total_copies"] == 2
    assert stored["available_copies"] == 0


@pytest.mark.asyncio
async def test_book_update_without_copies(db, book):
    updated = await catalog.apply_book_update(db, book["_id"], BookUpdate(price=42))
    assert updated["price"] == 42
    assert updated["available_copies"] == 1


@pytest.mark.asyncio
async def test_reviews_update_mean_rating(db, book, alice, bob):
    await catalog.add_review(db, book["_id"], alice["_id"], ReviewCreate(rating=5, comment="Loved it"))
    updated = await catalog.add_review(
        db, book["_id"], bob["_id"], ReviewCreate(rating=2, comment="Slow")
    )

    assert updated["ratings"] == pytest.approx(3.5)
    assert len(updated["reviews"]) == 2
    assert (await crud.get_book(db, book["_id"]))["ratings"] == pytest.approx(3.5)


@pytest.mark.asyncio
async def test_second_review_conflicts(db, book, alice):
    await catalog.add_review(db, book["_id"], alice["_id"], ReviewCreate(rating=4, comment="Good"))

    with pytest.raises(ConflictError):
        await catalog.add_review(
            db, book["_id"], alice["_id"], ReviewCreate(rating=1, comment="Changed my mind")
        )

    stored = await crud.get_book(db, book["_id"])
    assert len(stored["reviews"]) == 1
    assert stored["ratings"] == 4


@pytest.mark.asyncio
async def test_release_survives_inventory_edit(db, monkeypatch):
    book = await make_book(db, total_copies=2)
    await catalog.reserve_copy(db, book["_id"])
    read_inventory = catalog._inventory
    edits = []

    async def read_then_edit(db, book_id):
        snapshot = await read_inventory(db, book_id)
        if not edits:
            # an admin adds a copy between the read and the write
            await db.books.update_one(
                {"_id": book_id}, {"$inc": {"total_copies": 1, "available_copies": 1}}
            )
            edits.append(book_id)
        return snapshot

    monkeypatch.setattr(catalog, "_inventory", read_then_edit)

    assert await catalog.release_copy(db, book["_id"]) is True

    stored = await crud.get_book(db, book["_id"])
    assert stored["total_copies"] == 3
    assert stored["available_copies"] == 3
