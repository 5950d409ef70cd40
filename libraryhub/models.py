from datetime import datetime
from enum import Enum
from typing import Annotated, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel, BeforeValidator, Field


def _object_id_to_str(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, str) and ObjectId.is_valid(value):
        return value
    raise ValueError("Invalid objectid")


PyObjectId = Annotated[str, BeforeValidator(_object_id_to_str)]


class BorrowStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    RETURNED = "returned"
    # Declared for parity with stored documents; no transition sets it.
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (BorrowStatus.PENDING.value, BorrowStatus.APPROVED.value)


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class BookCategory(str, Enum):
    FICTION = "Fiction"
    NON_FICTION = "Non-Fiction"
    SCIENCE_FICTION = "Science Fiction"
    MYSTERY = "Mystery"
    FANTASY = "Fantasy"
    BIOGRAPHY = "Biography"
    HISTORY = "History"
    SELF_HELP = "Self-Help"
    SCIENCE = "Science"
    TECHNOLOGY = "Technology"
    ROMANCE = "Romance"
    THRILLER = "Thriller"
    CHILDREN = "Children"
    OTHER = "Other"


class Image(BaseModel):
    public_id: Optional[str] = None
    url: Optional[str] = None


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None


class ReviewModel(BaseModel):
    user: PyObjectId
    rating: int = Field(..., ge=1, le=5)
    comment: str
    created_at: Optional[datetime] = None


class BookModel(BaseModel):
    id: PyObjectId = Field(alias="_id")
    title: str
    author: str
    description: str
    category: str
    publication_year: int
    isbn: str
    price: float
    image: Optional[Image] = None
    total_copies: int
    available_copies: int
    ratings: float = 0
    reviews: List[ReviewModel] = []
    borrowed_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_favorite: Optional[bool] = None

    class Config:
        populate_by_name = True


class BookSummary(BaseModel):
    id: PyObjectId = Field(alias="_id")
    title: str
    author: str
    image: Optional[Image] = None

    class Config:
        populate_by_name = True


class BorrowHistoryEntry(BaseModel):
    request: Optional[PyObjectId] = None
    book: PyObjectId
    borrowed_date: Optional[datetime] = None
    return_date: Optional[datetime] = None
    status: BorrowStatus = BorrowStatus.PENDING


class UserModel(BaseModel):
    id: PyObjectId = Field(alias="_id")
    full_name: str
    email: str
    date_of_birth: Optional[datetime] = None
    address: Optional[Address] = None
    profile_picture: Optional[Image] = None
    role: Role = Role.USER
    favorite_books: List[PyObjectId] = []
    borrowed_books: List[BorrowHistoryEntry] = []
    created_at: Optional[datetime] = None

    class Config:
        populate_by_name = True


class UserSummary(BaseModel):
    id: PyObjectId = Field(alias="_id")
    full_name: str
    email: str
    profile_picture: Optional[Image] = None

    class Config:
        populate_by_name = True


class BorrowRequestModel(BaseModel):
    id: PyObjectId = Field(alias="_id")
    user: Union[UserSummary, PyObjectId]
    book: Union[BookSummary, PyObjectId]
    borrow_date: Optional[datetime] = None
    expected_return_date: Optional[datetime] = None
    actual_return_date: Optional[datetime] = None
    status: BorrowStatus = BorrowStatus.PENDING
    fine_amount: float = Field(0, ge=0)
    total_amount: float
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True
