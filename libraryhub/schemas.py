from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from .models import Address, BookCategory, Image

ISBN_PATTERN = r"^(?:\d{10}|\d{13})$"


def _year_not_in_future(value: Optional[int]) -> Optional[int]:
    if value is not None and value > datetime.now().year:
        raise ValueError("Publication year cannot be in the future")
    return value


class BookCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    author: str = Field(..., min_length=1, max_length=50)
    description: str = Field(..., max_length=1000)
    category: BookCategory
    publication_year: int = Field(..., ge=1000, alias="publicationYear")
    isbn: str = Field(..., pattern=ISBN_PATTERN)
    price: float = Field(..., ge=0)
    total_copies: int = Field(..., ge=1, alias="totalCopies")
    image: Optional[Image] = None

    class Config:
        populate_by_name = True

    @field_validator("title", "author")
    @classmethod
    def strip_text(cls, value: str) -> str:
        return value.strip()

    @field_validator("publication_year")
    @classmethod
    def not_in_future(cls, value: int) -> int:
        return _year_not_in_future(value)


class BookUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    author: Optional[str] = Field(None, min_length=1, max_length=50)
    description: Optional[str] = Field(None, max_length=1000)
    category: Optional[BookCategory] = None
    publication_year: Optional[int] = Field(None, ge=1000, alias="publicationYear")
    isbn: Optional[str] = Field(None, pattern=ISBN_PATTERN)
    price: Optional[float] = Field(None, ge=0)
    total_copies: Optional[int] = Field(None, ge=1, alias="totalCopies")
    image: Optional[Image] = None

    class Config:
        populate_by_name = True

    @field_validator("publication_year")
    @classmethod
    def not_in_future(cls, value: Optional[int]) -> Optional[int]:
        return _year_not_in_future(value)


class ReviewCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=1)


class UserCreate(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=50, alias="fullName")
    email: EmailStr
    password: str = Field(..., min_length=6)
    date_of_birth: datetime = Field(..., alias="dateOfBirth")
    address: Optional[Address] = None
    profile_picture: Optional[Image] = Field(None, alias="profilePicture")

    class Config:
        populate_by_name = True

    @field_validator("address")
    @classmethod
    def valid_pincode(cls, value: Optional[Address]) -> Optional[Address]:
        if value and value.pincode and not (
            len(value.pincode) == 6 and value.pincode.isdigit()
        ):
            raise ValueError("Please provide a valid 6-digit pincode")
        return value


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class UserDetailsUpdate(BaseModel):
    full_name: Optional[str] = Field(None, min_length=1, max_length=50, alias="fullName")
    email: Optional[EmailStr] = None
    date_of_birth: Optional[datetime] = Field(None, alias="dateOfBirth")
    address: Optional[Address] = None
    profile_picture: Optional[Image] = Field(None, alias="profilePicture")

    class Config:
        populate_by_name = True


class UserAdminUpdate(UserDetailsUpdate):
    role: Optional[Literal["user", "admin"]] = None


class PasswordUpdate(BaseModel):
    current_password: str = Field(..., alias="currentPassword")
    new_password: str = Field(..., min_length=6, alias="newPassword")

    class Config:
        populate_by_name = True


class ForgotPassword(BaseModel):
    email: EmailStr


class PasswordReset(BaseModel):
    password: str = Field(..., min_length=6)


class BorrowRequestCreate(BaseModel):
    expected_return_date: datetime = Field(..., alias="expectedReturnDate")

    class Config:
        populate_by_name = True


class BorrowRequestUpdate(BaseModel):
    status: Literal["approved", "rejected"] = "approved"


class BookFilterParams(BaseModel):
    search: Optional[str] = None
    category: Optional[str] = None
    min_rating: Optional[float] = Field(None, ge=0, le=5)
    sort: Optional[Literal["price_asc", "price_desc", "rating_asc", "rating_desc"]] = None
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=100)


class UserFilterParams(BaseModel):
    search: Optional[str] = None
    role: Optional[Literal["user", "admin"]] = None
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=100)


class BorrowRequestFilterParams(BaseModel):
    search: str = ""
    status: Optional[str] = None
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=100)
