"""
FastAPI JSON API for MusicMark

Every /api route authenticates with HTTP Basic credentials checked against
the user table; there are no sessions.

Endpoints:
  GET    /health                          - Liveness
  GET    /api/ping                        - Check credentials
  POST   /api/listens                     - Record a listen (dedup by natural key)
  GET    /api/listens?page=&limit=        - Paged history, newest first
  DELETE /api/listens                     - Delete own listens by id
  GET    /api/stats                       - Totals, daily and source breakdown
  GET    /api/top?range=&limit=           - Top songs (all time or last 7 days)
  GET    /api/admin/users                 - List users (admin)
  POST   /api/admin/users                 - Create a user (admin)
  POST   /api/admin/users/{id}/password   - Reset a user's password (admin)
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from loguru import logger
from pydantic import BaseModel, Field

from .config import Settings
from .errors import (
    DuplicateKey,
    MusicMarkError,
    NotFound,
    StorageFailure,
    Unauthorized,
    ValidationError,
)
from .ingestion import ListenPayload
from .models import PublicUser, Role
from .queries import DEFAULT_PAGE_SIZE
from .service import MusicMark

REALM = 'Basic realm="MusicMark API"'
DEFAULT_SOURCE = "watch"


class Forbidden(MusicMarkError):
    """Authenticated, but not an admin."""


_STATUS_BY_ERROR = [
    (ValidationError, 400, "Bad Request"),
    (Unauthorized, 401, "Unauthorized"),
    (Forbidden, 403, "Forbidden"),
    (NotFound, 404, "Not Found"),
    (DuplicateKey, 409, "Conflict"),
    (StorageFailure, 500, "Internal Server Error"),
]


def _status_for(exc: MusicMarkError) -> tuple[int, str]:
    for kind, status, label in _STATUS_BY_ERROR:
        if isinstance(exc, kind):
            return status, label
    return 500, "Internal Server Error"


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class DeleteRequest(BaseModel):
    ids: List[int] = Field(default_factory=list)


class CreateUserRequest(BaseModel):
    username: str
    password: str
    role: str = Role.USER.value


class PasswordRequest(BaseModel):
    password: str


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    settings: Optional[Settings] = None,
    musicmark: Optional[MusicMark] = None,
) -> FastAPI:
    """Build the API around a ``MusicMark`` that is opened on startup."""
    mm = musicmark or MusicMark(settings or Settings.from_env())
    security = HTTPBasic(auto_error=False)

    @asynccontextmanager
    async def lifespan(app_instance: FastAPI):
        if not mm.store.loaded:
            mm.open()
        logger.info(f"{mm.settings.site_name} API ready ({mm.store.path})")
        yield
        mm.close()

    app = FastAPI(title=mm.settings.site_name, lifespan=lifespan)
    app.state.musicmark = mm

    # ------------------------------------------------------------------
    # Error mapping
    # ------------------------------------------------------------------

    @app.exception_handler(MusicMarkError)
    async def _core_error(request: Request, exc: MusicMarkError):
        status, label = _status_for(exc)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        body: Dict[str, Any] = {"ok": False, "error": label}
        if isinstance(exc, ValidationError):
            body["message"] = str(exc)
            if exc.details is not None:
                body["details"] = exc.details
        elif isinstance(exc, (NotFound, DuplicateKey)):
            body["message"] = str(exc)
        headers = {"WWW-Authenticate": REALM} if status == 401 else None
        return JSONResponse(body, status_code=status, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def _request_error(request: Request, exc: RequestValidationError):
        details = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        return JSONResponse(
            {"ok": False, "error": "Bad Request", "details": details},
            status_code=400,
        )

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception):
        logger.exception(f"{request.method} {request.url.path} crashed: {exc}")
        return JSONResponse(
            {"ok": False, "error": "Internal Server Error"},
            status_code=500,
        )

    # ------------------------------------------------------------------
    # Auth dependencies
    # ------------------------------------------------------------------

    def current_user(
        credentials: Optional[HTTPBasicCredentials] = Depends(security),
    ) -> PublicUser:
        if credentials is None:
            raise Unauthorized()
        return mm.verify_password(credentials.username, credentials.password)

    def current_admin(user: PublicUser = Depends(current_user)) -> PublicUser:
        if user.role != Role.ADMIN:
            raise Forbidden(f"User {user.username!r} is not an admin")
        return user

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.get("/api/ping")
    def ping(user: PublicUser = Depends(current_user)):
        return {"ok": True, "user": {"id": user.id, "username": user.username}}

    @app.post("/api/listens")
    def add_listen(
        body: Dict[str, Any] = Body(...),
        user: PublicUser = Depends(current_user),
    ):
        """Record a listen; the source defaults to 'watch'."""
        data = dict(body)
        if not data.get("source"):
            data["source"] = DEFAULT_SOURCE
        payload = ListenPayload.parse(data)
        result = mm.insert_listen(user.id, payload)
        return {"ok": True, "id": result.id, "duplicate": result.duplicate}

    @app.get("/api/listens")
    def list_listens(
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        user: PublicUser = Depends(current_user),
    ):
        result = mm.page_listens(user.id, page=page, page_size=limit)
        return {
            "ok": True,
            "page": result.page,
            "limit": result.limit,
            "total": result.total,
            "items": [l.model_dump(mode="json") for l in result.items],
        }

    @app.delete("/api/listens")
    def delete_listens(
        body: DeleteRequest,
        user: PublicUser = Depends(current_user),
    ):
        removed = mm.delete_listens(user.id, body.ids)
        return {"ok": True, "removed": removed}

    @app.get("/api/stats")
    def stats(user: PublicUser = Depends(current_user)):
        return {"ok": True, "stats": mm.get_stats(user.id).model_dump()}

    @app.get("/api/top")
    def top_songs(
        range: str = "all",
        limit: int = 50,
        user: PublicUser = Depends(current_user),
    ):
        items = mm.get_top_songs(user.id, range=range, limit=limit)
        return {"ok": True, "range": range, "items": [s.model_dump() for s in items]}

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    @app.get("/api/admin/users")
    def admin_list_users(admin: PublicUser = Depends(current_admin)):
        return {"ok": True, "users": [u.model_dump(mode="json") for u in mm.list_users()]}

    @app.post("/api/admin/users")
    def admin_create_user(
        body: CreateUserRequest,
        admin: PublicUser = Depends(current_admin),
    ):
        user_id = mm.create_user(body.username, body.password, body.role)
        return {"ok": True, "id": user_id}

    @app.post("/api/admin/users/{user_id}/password")
    def admin_reset_password(
        user_id: int,
        body: PasswordRequest,
        admin: PublicUser = Depends(current_admin),
    ):
        mm.update_password(user_id, body.password)
        return {"ok": True}

    @app.exception_handler(404)
    async def _not_found(request: Request, exc):
        return JSONResponse({"ok": False, "error": "Not Found"}, status_code=404)

    return app
