import logging
import re
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import accounts, catalog, crud
from .auth import (
    clear_token_cookie,
    create_access_token,
    generate_reset_token,
    get_current_user,
    get_optional_user,
    get_request_context,
    hash_password,
    hash_reset_token,
    public_user,
    require_admin,
    set_token_cookie,
    verify_password,
)
from .config import settings
from .exceptions import (
    AuthenticationError,
    NotFoundError,
    NotificationError,
    ValidationFailedError,
    add_exception_handlers,
    error_body,
)
from .internal_messaging import cleanup_messaging, setup_messaging
from .models import BookModel, BorrowRequestModel, UserModel
from .notifications import EmailTemplates, NotificationGateway
from .schemas import (
    BookCreate,
    BookFilterParams,
    BookUpdate,
    BorrowRequestCreate,
    BorrowRequestFilterParams,
    BorrowRequestUpdate,
    ForgotPassword,
    PasswordReset,
    PasswordUpdate,
    ReviewCreate,
    UserAdminUpdate,
    UserCreate,
    UserDetailsUpdate,
    UserFilterParams,
    UserLogin,
)
from .storage import (
    close_db_connection,
    ensure_indexes,
    get_database,
    get_db,
    init_db,
)
from .workflow import BorrowWorkflow, RequestContext, WorkflowResult

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.testing = app.state.testing if hasattr(app.state, "testing") else False
    messaging = getattr(app.state, "rabbitmq_manager", None)

    if not app.state.testing:
        logger.info("Initializing database connection")
        await init_db()
        app.state.db = get_database()
        await ensure_indexes(app.state.db)
        try:
            messaging = await setup_messaging(app)
        except Exception as e:
            logger.error(f"Email notifications disabled, messaging unavailable: {e}")

    app.state.notifications = NotificationGateway(messaging)

    yield

    await app.state.notifications.drain()
    if not app.state.testing:
        logger.info("Closing RabbitMQ connection")
        await cleanup_messaging(app)
        logger.info("Closing database connection")
        await close_db_connection()


app = FastAPI(
    title="LibraryHub API",
    lifespan=lifespan,
    description="Book catalog, accounts and borrow-request workflow for LibraryHub",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

add_exception_handlers(app)


def get_notifications(request: Request) -> NotificationGateway:
    return request.app.state.notifications


def get_workflow(
    db=Depends(get_db), notifications=Depends(get_notifications)
) -> BorrowWorkflow:
    return BorrowWorkflow(db, notifications)


def serialize_book(book: Dict[str, Any], favorites=frozenset()) -> Dict[str, Any]:
    model = BookModel(**book, is_favorite=book["_id"] in favorites)
    return model.model_dump(mode="json", by_alias=True)


def serialize_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return UserModel(**public_user(user)).model_dump(mode="json", by_alias=True)


def serialize_borrow_request(borrow_request: Dict[str, Any]) -> Dict[str, Any]:
    return BorrowRequestModel(**borrow_request).model_dump(mode="json", by_alias=True)


def workflow_response(result: WorkflowResult) -> JSONResponse:
    return JSONResponse(status_code=result.status_code, content=result.body())


def token_response(user: Dict[str, Any], status_code: int = status.HTTP_200_OK) -> JSONResponse:
    token = create_access_token(user["_id"])
    response = JSONResponse(
        status_code=status_code,
        content={"success": True, "token": token, "data": serialize_user(user)},
    )
    set_token_cookie(response, token)
    return response


@app.get("/")
async def read_root():
    return {"success": True, "message": "LibraryHub API is running"}


# Auth


@app.post("/api/auth/register")
async def register(
    user: UserCreate,
    db=Depends(get_db),
    notifications: NotificationGateway = Depends(get_notifications),
):
    if await crud.get_user_by_email(db, user.email):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=error_body("You are already registered"),
        )
    created = await crud.create_user(db, user, hash_password(user.password))
    logger.info(f"User registered: {created['email']}")

    notifications.send(
        created["email"], "Welcome to LibraryHub!", EmailTemplates.welcome(created)
    )
    return token_response(created)


@app.post("/api/auth/login")
async def login(credentials: UserLogin, db=Depends(get_db)):
    user = await crud.get_user_by_email(db, credentials.email)
    if not user or not verify_password(credentials.password, user.get("password")):
        raise AuthenticationError("Invalid credentials")
    logger.info(f"User logged in: {user['email']}")
    return token_response(user)


@app.get("/api/auth/logout")
async def logout(response: Response):
    clear_token_cookie(response)
    return {"success": True, "message": "Logged out successfully"}


@app.get("/api/auth/me")
async def get_me(user=Depends(get_current_user), db=Depends(get_db)):
    profile = await accounts.load_profile(db, user["_id"])
    return {"success": True, "data": serialize_user(profile)}


@app.put("/api/auth/updatedetails")
async def update_details(
    details: UserDetailsUpdate, user=Depends(get_current_user), db=Depends(get_db)
):
    fields = details.model_dump(exclude_unset=True, exclude_none=True)
    if not fields:
        raise ValidationFailedError("No fields to update")
    updated = await crud.update_user_fields(db, user["_id"], fields)
    return {"success": True, "data": serialize_user(updated)}


@app.put("/api/auth/updatepassword")
async def update_password(
    passwords: PasswordUpdate, user=Depends(get_current_user), db=Depends(get_db)
):
    if not verify_password(passwords.current_password, user.get("password")):
        raise AuthenticationError("Password is incorrect")
    updated = await crud.update_user_fields(
        db, user["_id"], {"password": hash_password(passwords.new_password)}
    )
    return token_response(updated)


@app.post("/api/auth/forgotpassword")
async def forgot_password(
    payload: ForgotPassword,
    db=Depends(get_db),
    notifications: NotificationGateway = Depends(get_notifications),
):
    user = await crud.get_user_by_email(db, payload.email)
    if not user:
        raise NotFoundError("There is no user with that email")

    reset_token, token_digest = generate_reset_token()
    await crud.update_user_fields(
        db,
        user["_id"],
        {
            "reset_password_token": token_digest,
            "reset_password_expire": crud.utcnow()
            + timedelta(minutes=settings.reset_token_expire_minutes),
        },
    )
    reset_url = f"{settings.frontend_url}/resetpassword/{reset_token}"
    try:
        await notifications.deliver(
            user["email"],
            "Password Reset Request - LibraryHub",
            EmailTemplates.password_reset(reset_url, user),
        )
    except NotificationError as e:
        logger.error(f"Password reset email failed for {user['email']}: {e}")
        await db.users.update_one(
            {"_id": user["_id"]},
            {"$unset": {"reset_password_token": "", "reset_password_expire": ""}},
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_body("Email could not be sent"),
        )
    return {"success": True, "message": "Email sent"}


@app.put("/api/auth/resetpassword/{reset_token}")
async def reset_password(reset_token: str, payload: PasswordReset, db=Depends(get_db)):
    user = await db.users.find_one({"reset_password_token": hash_reset_token(reset_token)})
    expires_at = crud.as_utc(user.get("reset_password_expire")) if user else None
    if expires_at is None or expires_at <= crud.utcnow():
        raise ValidationFailedError("Invalid token")

    await db.users.update_one(
        {"_id": user["_id"]},
        {
            "$set": {"password": hash_password(payload.password)},
            "$unset": {"reset_password_token": "", "reset_password_expire": ""},
        },
    )
    return token_response(await crud.get_user(db, user["_id"]))


# Books


@app.post("/api/books", status_code=status.HTTP_201_CREATED)
async def create_book(book: BookCreate, admin=Depends(require_admin), db=Depends(get_db)):
    logger.info(f"Received request to add book: {book.title}")
    created = await crud.create_book(db, book)
    logger.info(f"Book added successfully: {created['_id']}")
    return {"success": True, "data": serialize_book(created)}


@app.get("/api/books")
async def list_books(
    params: BookFilterParams = Depends(),
    user=Depends(get_optional_user),
    db=Depends(get_db),
):
    total, books = await crud.list_books(db, params)
    favorites = await accounts.favorite_ids(db, user["_id"] if user else None)
    return {
        "success": True,
        "total_pages": crud.total_pages(total, params.limit),
        "total_books": total,
        "page": params.page,
        "limit": params.limit,
        "data": [serialize_book(book, favorites) for book in books],
    }


@app.get("/api/books/{book_id}")
async def read_book(book_id: str, user=Depends(get_optional_user), db=Depends(get_db)):
    book = await crud.get_book(db, book_id)
    favorites = await accounts.favorite_ids(db, user["_id"] if user else None)
    return {"success": True, "data": serialize_book(book, favorites)}


@app.put("/api/books/{book_id}")
async def modify_book(
    book_id: str, book_update: BookUpdate, admin=Depends(require_admin), db=Depends(get_db)
):
    updated = await catalog.apply_book_update(db, book_id, book_update)
    return {"success": True, "data": serialize_book(updated)}


@app.delete("/api/books/{book_id}")
async def remove_book(book_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    await crud.delete_book(db, book_id)
    logger.info(f"Book {book_id} deleted")
    return {"success": True, "message": "Book Delete Success"}


@app.post("/api/books/{book_id}/reviews")
async def add_review(
    book_id: str, review: ReviewCreate, user=Depends(get_current_user), db=Depends(get_db)
):
    await catalog.add_review(db, book_id, user["_id"], review)
    return {"success": True, "message": "Review added successfully"}


# Users


@app.get("/api/users")
async def list_users(
    params: UserFilterParams = Depends(), admin=Depends(require_admin), db=Depends(get_db)
):
    total, users = await crud.list_users(db, params)
    return {
        "success": True,
        "total_pages": crud.total_pages(total, params.limit),
        "total_users": total,
        "page": params.page,
        "limit": params.limit,
        "data": [serialize_user(user) for user in users],
    }


@app.post("/api/users/favorites/{book_id}")
async def add_to_favorites(book_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    await crud.get_book(db, book_id)
    await accounts.add_favorite(db, user["_id"], book_id)
    return {"success": True, "message": "Book added to favorites"}


@app.delete("/api/users/favorites/{book_id}")
async def remove_from_favorites(
    book_id: str, user=Depends(get_current_user), db=Depends(get_db)
):
    await accounts.remove_favorite(db, user["_id"], book_id)
    return {"success": True, "message": "Book removed from favorites"}


@app.get("/api/users/{user_id}")
async def read_user(user_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    profile = await accounts.load_profile(db, user_id)
    return {"success": True, "data": serialize_user(profile)}


@app.put("/api/users/{user_id}")
async def modify_user(
    user_id: str, changes: UserAdminUpdate, admin=Depends(require_admin), db=Depends(get_db)
):
    fields = changes.model_dump(exclude_unset=True, exclude_none=True)
    if not fields:
        raise ValidationFailedError("No fields to update")
    updated = await crud.update_user_fields(db, user_id, fields)
    return {"success": True, "data": serialize_user(updated)}


@app.delete("/api/users/{user_id}")
async def remove_user(user_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    await crud.delete_user(db, user_id)
    return {"success": True, "message": "User delete success"}


# Borrow requests


@app.post("/api/borrow-requests/{book_id}")
async def create_borrow_request(
    book_id: str,
    payload: BorrowRequestCreate,
    ctx: RequestContext = Depends(get_request_context),
    workflow: BorrowWorkflow = Depends(get_workflow),
):
    result = await workflow.create(ctx, book_id, payload.expected_return_date)
    return workflow_response(result)


@app.get("/api/borrow-requests")
async def list_borrow_requests(
    params: BorrowRequestFilterParams = Depends(),
    admin=Depends(require_admin),
    db=Depends(get_db),
):
    query = {"status": params.status} if params.status else {}
    borrow_requests = await crud.populate_borrow_requests(
        db, await crud.list_borrow_requests(db, query)
    )

    search = params.search.strip()
    if search:
        pattern = re.compile(re.escape(search), re.IGNORECASE)
        borrow_requests = [
            r
            for r in borrow_requests
            if _matches(pattern, r["user"], "full_name") or _matches(pattern, r["book"], "title")
        ]

    total = len(borrow_requests)
    start = (params.page - 1) * params.limit
    page_items: List[Dict[str, Any]] = borrow_requests[start : start + params.limit]
    return {
        "success": True,
        "total_borrow_req": total,
        "total_pages": crud.total_pages(total, params.limit),
        "current_page": params.page,
        "data": [serialize_borrow_request(r) for r in page_items],
    }


def _matches(pattern: re.Pattern, document: Any, field: str) -> bool:
    return isinstance(document, dict) and bool(pattern.search(document.get(field) or ""))


@app.get("/api/borrow-requests/my-requests")
async def list_my_borrow_requests(
    ctx: RequestContext = Depends(get_request_context), db=Depends(get_db)
):
    borrow_requests = await crud.populate_borrow_requests(
        db, await crud.list_borrow_requests(db, {"user": ctx.user_id}), with_user=False
    )
    return {
        "success": True,
        "count": len(borrow_requests),
        "data": [serialize_borrow_request(r) for r in borrow_requests],
    }


@app.put("/api/borrow-requests/{request_id}")
async def update_borrow_request(
    request_id: str,
    payload: Optional[BorrowRequestUpdate] = None,
    admin=Depends(require_admin),
    workflow: BorrowWorkflow = Depends(get_workflow),
):
    new_status = payload.status if payload else "approved"
    result = await workflow.update_status(request_id, new_status)
    return workflow_response(result)


@app.put("/api/borrow-requests/{request_id}/cancel")
async def cancel_borrow_request(
    request_id: str,
    ctx: RequestContext = Depends(get_request_context),
    workflow: BorrowWorkflow = Depends(get_workflow),
):
    return workflow_response(await workflow.cancel(ctx, request_id))


@app.put("/api/borrow-requests/{request_id}/return")
async def return_borrowed_book(
    request_id: str,
    ctx: RequestContext = Depends(get_request_context),
    workflow: BorrowWorkflow = Depends(get_workflow),
):
    return workflow_response(await workflow.return_book(ctx, request_id))


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)
