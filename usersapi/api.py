"""FastAPI application exposing CRUD endpoints for users."""
from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import ServiceSettings, load_settings
from .database import Database, StorageError, UserNotFoundError
from .models import User

logger = logging.getLogger("usersapi.api")
access_logger = logging.getLogger("usersapi.access")


class UserResponse(BaseModel):
    id: int
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None
    name: str
    email: str


class _UserFields(BaseModel):
    name: str = Field(default="", examples=["Tonkhab"])
    email: str = Field(default="", examples=["Tonkhab@gmail.com"])

    @field_validator("name", "email", mode="before")
    @classmethod
    def _null_as_empty(cls, value: object) -> object:
        return "" if value is None else value


class UserCreateRequest(_UserFields):
    pass


class UserUpdateRequest(_UserFields):
    """Partial update; empty or omitted fields leave the stored value untouched."""


class DeleteUserResponse(BaseModel):
    message: str


class ErrorResponse(BaseModel):
    code: int = Field(..., examples=[400])
    message: str = Field(..., examples=["status bad request"])


def user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        created_at=user.created_at,
        updated_at=user.updated_at,
        deleted_at=user.deleted_at,
        name=user.name,
        email=user.email,
    )


def error_response(status_code: int, message: str, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    payload = ErrorResponse(code=status_code, message=message)
    return JSONResponse(status_code=status_code, content=payload.model_dump(), headers=headers)


def _describe_validation_error(exc: RequestValidationError) -> str:
    parts: List[str] = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "body")
        message = str(error.get("msg", "invalid value"))
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "Invalid request"


_ERROR_RESPONSES = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
}


def create_app(
    *,
    database: Database | None = None,
    settings: ServiceSettings | None = None,
    initialize_database: bool = False,
) -> FastAPI:
    """Build the ASGI application around an explicit :class:`Database`."""

    if database is None:
        if settings is None:
            settings = load_settings()
        database = Database(settings.database_path)
        database.initialize()
    elif initialize_database:
        database.initialize()

    app = FastAPI(
        title="User Management API",
        description="This is a sample server for managing users.",
        version="1.0",
    )
    app.state.database = database

    def get_db() -> Database:
        return database

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Unhandled error while serving %s %s", request.method, request.url.path)
            response = error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error")
        elapsed_ms = (time.perf_counter() - started) * 1000
        access_logger.info(
            "%s %s -> %s (%.1f ms)",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        return response

    @app.get("/health")
    def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get(
        "/users",
        response_model=List[UserResponse],
        response_model_exclude_none=True,
        responses=_ERROR_RESPONSES,
        tags=["users"],
    )
    def list_users(db: Database = Depends(get_db)) -> List[UserResponse]:
        return [user_to_response(user) for user in db.list_users()]

    @app.get(
        "/user/{user_id}",
        response_model=UserResponse,
        response_model_exclude_none=True,
        responses=_ERROR_RESPONSES,
        tags=["user"],
    )
    def read_user(user_id: int, db: Database = Depends(get_db)) -> UserResponse:
        return user_to_response(db.get_user(user_id))

    @app.post(
        "/users",
        response_model=UserResponse,
        response_model_exclude_none=True,
        status_code=status.HTTP_201_CREATED,
        responses=_ERROR_RESPONSES,
        tags=["users"],
    )
    def create_user(payload: UserCreateRequest, db: Database = Depends(get_db)) -> UserResponse:
        return user_to_response(db.create_user(payload.name, payload.email))

    @app.put(
        "/users/{user_id}",
        response_model=UserUpdateRequest,
        responses=_ERROR_RESPONSES,
        tags=["user"],
    )
    def update_user(
        user_id: int,
        payload: UserUpdateRequest,
        db: Database = Depends(get_db),
    ) -> UserUpdateRequest:
        # The caller's input is echoed back rather than the stored row.
        db.update_user(user_id, name=payload.name, email=payload.email)
        return payload

    @app.delete(
        "/users/{user_id}",
        response_model=DeleteUserResponse,
        responses=_ERROR_RESPONSES,
        tags=["user"],
    )
    def delete_user(user_id: int, db: Database = Depends(get_db)) -> DeleteUserResponse:
        db.delete_user(user_id)
        return DeleteUserResponse(message=f"User with ID {user_id} deleted")

    @app.exception_handler(UserNotFoundError)
    async def handle_user_not_found(_: Request, exc: UserNotFoundError):
        return error_response(status.HTTP_404_NOT_FOUND, "User not found")

    @app.exception_handler(StorageError)
    async def handle_storage_error(request: Request, exc: StorageError):
        logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_: Request, exc: RequestValidationError):
        return error_response(status.HTTP_400_BAD_REQUEST, _describe_validation_error(exc))

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(_: Request, exc: StarletteHTTPException):
        return error_response(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))

    return app


__all__ = ["create_app", "user_to_response"]
