from datetime import datetime

import pytest
from bson import ObjectId
from pydantic import ValidationError

from libraryhub.models import BookModel, BorrowRequestModel
from libraryhub.schemas import (
    BookCreate,
    BookUpdate,
    BorrowRequestCreate,
    BorrowRequestUpdate,
    ReviewCreate,
    UserCreate,
)

BOOK_DATA = {
    "title": "  Dune ",
    "author": "Frank Herbert",
    "description": "Spice and sand.",
    "category": "Science Fiction",
    "publicationYear": 1965,
    "isbn": "9780441013593",
    "price": 80,
    "totalCopies": 2,
}


def test_book_create_accepts_aliases():
    book = BookCreate(**BOOK_DATA)
    assert book.title == "Dune"
    assert book.publication_year == 1965
    assert book.total_copies == 2


@pytest.mark.parametrize(
    "field, value",
    [
        ("isbn", "12345"),
        ("totalCopies", 0),
        ("price", -1),
        ("category", "Cookbooks"),
        ("publicationYear", datetime.now().year + 1),
    ],
)
def test_book_create_rejects(field, value):
    with pytest.raises(ValidationError):
        BookCreate(**{**BOOK_DATA, field: value})


def test_review_rating_bounds():
    with pytest.raises(ValidationError):
        ReviewCreate(rating=6, comment="Too good")
    assert ReviewCreate(rating=1, comment="Meh").rating == 1


def test_user_create_pincode():
    data = {
        "fullName": "Alice Reader",
        "email": "alice@example.com",
        "password": "secret-pass",
        "dateOfBirth": "1995-05-17T00:00:00",
    }
    assert UserCreate(**data, address={"pincode": "560001"}).address.pincode == "560001"
    with pytest.raises(ValidationError):
        UserCreate(**data, address={"pincode": "56A001"})
    with pytest.raises(ValidationError):
        UserCreate(**{**data, "email": "not-an-email"})


def test_borrow_request_schemas():
    created = BorrowRequestCreate(expectedReturnDate="2026-12-01T00:00:00Z")
    assert created.expected_return_date.year == 2026
    assert BorrowRequestUpdate().status == "approved"
    with pytest.raises(ValidationError):
        BorrowRequestUpdate(status="cancelled")


def test_borrow_request_model_serializes_ids():
    request_id, user_id, book_id = ObjectId(), ObjectId(), ObjectId()
    model = BorrowRequestModel(
        _id=request_id, user=user_id, book=book_id, status="pending", total_amount=110
    )
    data = model.model_dump(mode="json", by_alias=True)
    assert data["_id"] == str(request_id)
    assert data["user"] == str(user_id)
    assert data["book"] == str(book_id)
    assert data["fine_amount"] == 0


def test_borrow_request_model_with_summaries():
    model = BorrowRequestModel(
        _id=ObjectId(),
        user={"_id": ObjectId(), "full_name": "Alice Reader", "email": "alice@example.com"},
        book={"_id": ObjectId(), "title": "Dune", "author": "Frank Herbert"},
        status="approved",
        total_amount=88,
    )
    data = model.model_dump(mode="json", by_alias=True)
    assert data["user"]["full_name"] == "Alice Reader"
    assert data["book"]["title"] == "Dune"


def test_book_model_rejects_bad_object_id():
    with pytest.raises(ValidationError):
        BookModel(
            _id="not-an-object-id",
            title="Dune",
            author="Frank Herbert",
            description="",
            category="Science Fiction",
            publication_year=1965,
            isbn="9780441013593",
            price=80,
            total_copies=1,
            available_copies=1,
        )


def test_book_update_rejects_future_year():
    with pytest.raises(ValidationError):
        BookUpdate(publicationYear=datetime.now().year + 1)
    assert BookUpdate(publicationYear=1965).publication_year == 1965
    assert BookUpdate(price=10).publication_year is None
