"""Borrow-request lifecycle.

    pending --approve--> approved --return_book--> returned
    pending --reject---> rejected
    pending --cancel---> cancelled

Only approval takes a copy off the shelf and only a return puts it back.
``overdue`` is a stored status value that no transition produces.

Every public operation returns a :class:`WorkflowResult`; guard failures
and store errors are turned into failed results at this boundary.
"""

import functools
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from bson import ObjectId
from fastapi import status

from . import accounts, catalog, crud
from .config import settings
from .exceptions import (
    BookNotAvailableError,
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    LibraryException,
    ValidationFailedError,
)
from .models import BorrowRequestModel, BorrowStatus, Role
from .notifications import EmailTemplates, NotificationGateway

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass(frozen=True)
class RequestContext:
    """Who is calling; passed explicitly into every workflow operation."""

    user_id: ObjectId
    role: str = Role.USER.value

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value


@dataclass
class WorkflowResult:
    success: bool
    message: str
    status_code: int = status.HTTP_200_OK
    data: Optional[Dict[str, Any]] = None

    def body(self) -> Dict[str, Any]:
        content: Dict[str, Any] = {"success": self.success, "message": self.message}
        if self.data is not None:
            content["data"] = self.data
        return content


def compute_total_amount(price: float, tax_rate: float = settings.tax_rate) -> float:
    return price + price * tax_rate


def compute_fine(
    expected_return_date: Optional[datetime],
    returned_at: datetime,
    fine_per_day: float = settings.fine_per_day,
) -> float:
    """Fine for a late return: every started day past the due date counts."""
    if expected_return_date is None:
        return 0
    late = crud.as_utc(returned_at) - crud.as_utc(expected_return_date)
    if late <= timedelta(0):
        return 0
    return math.ceil(late.total_seconds() / SECONDS_PER_DAY) * fine_per_day


def workflow_operation(func: Callable):
    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> WorkflowResult:
        try:
            return await func(*args, **kwargs)
        except LibraryException as e:
            logger.info(f"{func.__name__} refused: {e.message}")
            return WorkflowResult(False, e.message, e.status_code)
        except Exception as e:
            logger.exception(f"Unexpected error in {func.__name__}: {e}")
            return WorkflowResult(
                False, "Server Error", status.HTTP_500_INTERNAL_SERVER_ERROR
            )

    return wrapper


class BorrowWorkflow:
    def __init__(
        self,
        db,
        notifications: NotificationGateway,
        clock: Callable[[], datetime] = crud.utcnow,
    ):
        self.db = db
        self.notifications = notifications
        self.clock = clock

    @workflow_operation
    async def create(
        self, ctx: RequestContext, book_id, expected_return_date: datetime
    ) -> WorkflowResult:
        now = self.clock()
        if crud.as_utc(expected_return_date) <= crud.as_utc(now):
            raise ValidationFailedError("Expected return date must be in the future")
        book = await crud.get_book(self.db, book_id)
        if book["available_copies"] < 1:
            raise BookNotAvailableError(book["_id"])
        if await crud.find_active_request(self.db, ctx.user_id, book["_id"]):
            raise ConflictError("You already have an active request for this book")

        borrow_request = await crud.create_borrow_request(
            self.db,
            {
                "user": ctx.user_id,
                "book": book["_id"],
                "expected_return_date": expected_return_date,
                "status": BorrowStatus.PENDING.value,
                "fine_amount": 0,
                "total_amount": compute_total_amount(book["price"]),
                "created_at": now,
                "updated_at": now,
            },
        )
        await accounts.push_history_entry(self.db, borrow_request)
        logger.info(
            f"Borrow request {borrow_request['_id']} created by {ctx.user_id} "
            f"for book {book['_id']}"
        )
        return WorkflowResult(
            True,
            "Borrow request sent to admin",
            status.HTTP_201_CREATED,
            {"id": str(borrow_request["_id"]), "total_amount": borrow_request["total_amount"]},
        )

    @workflow_operation
    async def update_status(self, request_id, new_status: str) -> WorkflowResult:
        if new_status == BorrowStatus.APPROVED.value:
            return await self._approve(request_id)
        if new_status == BorrowStatus.REJECTED.value:
            return await self._reject(request_id)
        raise ValidationFailedError("Status must be 'approved' or 'rejected'")

    async def approve(self, request_id) -> WorkflowResult:
        return await self.update_status(request_id, BorrowStatus.APPROVED.value)

    async def reject(self, request_id) -> WorkflowResult:
        return await self.update_status(request_id, BorrowStatus.REJECTED.value)

    async def _approve(self, request_id) -> WorkflowResult:
        borrow_request = await crud.get_borrow_request(self.db, request_id)
        if borrow_request["status"] != BorrowStatus.PENDING.value:
            raise InvalidStateError("Only pending requests can be approved")

        book = await crud.get_book(self.db, borrow_request["book"])
        if await catalog.reserve_copy(self.db, book["_id"]) is None:
            raise BookNotAvailableError(book["_id"], "No available copies of this book")

        now = self.clock()
        updated = await crud.transition_borrow_request(
            self.db,
            borrow_request["_id"],
            BorrowStatus.PENDING.value,
            {"status": BorrowStatus.APPROVED.value, "borrow_date": now},
        )
        if updated is None:
            await catalog.unreserve_copy(self.db, book["_id"])
            raise InvalidStateError("Only pending requests can be approved")

        await accounts.set_history_status(self.db, updated, borrowed_date=now)
        user = await self.db.users.find_one({"_id": updated["user"]})
        if user:
            self.notifications.send(
                user["email"],
                "Borrow Request Approved - LibraryHub",
                EmailTemplates.borrow_approved(
                    user, book, updated.get("expected_return_date")
                ),
            )
        logger.info(f"Borrow request {updated['_id']} approved")
        return WorkflowResult(True, "Borrow request approved", data=self._serialize(updated))

    async def _reject(self, request_id) -> WorkflowResult:
        borrow_request = await crud.get_borrow_request(self.db, request_id)
        if borrow_request["status"] == BorrowStatus.APPROVED.value:
            raise ConflictError("Approved requests cannot be rejected")
        if borrow_request["status"] != BorrowStatus.PENDING.value:
            raise InvalidStateError("Only pending requests can be rejected")

        updated = await crud.transition_borrow_request(
            self.db,
            borrow_request["_id"],
            BorrowStatus.PENDING.value,
            {"status": BorrowStatus.REJECTED.value},
        )
        if updated is None:
            raise InvalidStateError("Only pending requests can be rejected")

        await accounts.set_history_status(self.db, updated)
        user = await self.db.users.find_one({"_id": updated["user"]})
        book = await self.db.books.find_one({"_id": updated["book"]})
        if user and book:
            self.notifications.send(
                user["email"],
                "Borrow Request Rejected - LibraryHub",
                EmailTemplates.borrow_rejected(
                    user, book, "Something went wrong, please try again later"
                ),
            )
        logger.info(f"Borrow request {updated['_id']} rejected")
        return WorkflowResult(True, "Borrow request rejected", data=self._serialize(updated))

    @workflow_operation
    async def cancel(self, ctx: RequestContext, request_id) -> WorkflowResult:
        borrow_request = await crud.get_borrow_request(self.db, request_id)
        if borrow_request["user"] != ctx.user_id:
            raise ForbiddenError("Not authorized to cancel this request")
        if borrow_request["status"] != BorrowStatus.PENDING.value:
            raise InvalidStateError("Only pending requests can be cancelled")

        updated = await crud.transition_borrow_request(
            self.db,
            borrow_request["_id"],
            BorrowStatus.PENDING.value,
            {"status": BorrowStatus.CANCELLED.value},
        )
        if updated is None:
            raise InvalidStateError("Only pending requests can be cancelled")

        await accounts.set_history_status(self.db, updated)
        logger.info(f"Borrow request {updated['_id']} cancelled by {ctx.user_id}")
        return WorkflowResult(
            True, "Borrow request cancelled successfully", data=self._serialize(updated)
        )

    @workflow_operation
    async def return_book(self, ctx: RequestContext, request_id) -> WorkflowResult:
        borrow_request = await crud.get_borrow_request(self.db, request_id)
        if borrow_request["user"] != ctx.user_id and not ctx.is_admin:
            raise ForbiddenError("Not authorized to return this book")
        if borrow_request["status"] != BorrowStatus.APPROVED.value:
            raise InvalidStateError("Only approved requests can be returned")

        now = self.clock()
        fine = compute_fine(borrow_request.get("expected_return_date"), now)
        updated = await crud.transition_borrow_request(
            self.db,
            borrow_request["_id"],
            BorrowStatus.APPROVED.value,
            {
                "status": BorrowStatus.RETURNED.value,
                "actual_return_date": now,
                "fine_amount": fine,
            },
        )
        if updated is None:
            raise InvalidStateError("Only approved requests can be returned")

        await catalog.release_copy(self.db, updated["book"])
        await accounts.set_history_status(self.db, updated)
        logger.info(f"Borrow request {updated['_id']} returned, fine {fine}")
        return WorkflowResult(
            True, "Thank you for returning the book", data=self._serialize(updated)
        )

    @staticmethod
    def _serialize(borrow_request: Dict[str, Any]) -> Dict[str, Any]:
        return BorrowRequestModel(**borrow_request).model_dump(mode="json", by_alias=True)
