from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

logger = logging.getLogger(__name__)


class LibraryException(Exception):
    """Base exception for library-related errors."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(LibraryException):
    status_code = status.HTTP_404_NOT_FOUND


class BookNotFoundError(NotFoundError):
    def __init__(self, book_id=None):
        self.book_id = book_id
        super().__init__("Book not found")


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id=None):
        self.user_id = user_id
        super().__init__("User not found")


class BorrowRequestNotFoundError(NotFoundError):
    def __init__(self, request_id=None):
        self.request_id = request_id
        super().__init__("Borrow request not found")


class ConflictError(LibraryException):
    pass


class ForbiddenError(LibraryException):
    status_code = status.HTTP_403_FORBIDDEN


class InvalidStateError(LibraryException):
    pass


class ValidationFailedError(LibraryException):
    pass


class AuthenticationError(LibraryException):
    status_code = status.HTTP_401_UNAUTHORIZED


class BookNotAvailableError(InvalidStateError):
    def __init__(self, book_id=None, message: str = "Book is not available for borrowing"):
        self.book_id = book_id
        super().__init__(message)


class NotificationError(LibraryException):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


def error_body(message: str) -> dict:
    return {"success": False, "message": message}


# Exception handlers
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.error(f"HTTP error {exc.status_code}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.detail))


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"Request validation error: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_body("Invalid request parameters. Please check your input."),
    )


async def response_validation_exception_handler(
    request: Request, exc: ResponseValidationError
):
    logger.error(f"Response validation error: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body(
            "The server encountered an unexpected error. Please contact support."
        ),
    )


async def general_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unexpected error: {str(exc)}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body("Server Error"),
    )


async def library_exception_handler(request: Request, exc: LibraryException):
    logger.error(f"Library error ({type(exc).__name__}): {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.message))


def add_exception_handlers(app: FastAPI):
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(
        ResponseValidationError, response_validation_exception_handler
    )
    app.add_exception_handler(Exception, general_exception_handler)
    app.add_exception_handler(LibraryException, library_exception_handler)
