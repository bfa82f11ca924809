"""FastAPI reference implementation of the structured sync backend."""

import hmac
import logging
import uuid
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import PlainTextResponse, Response

from ..config import ServerConfig
from .storage import ServerStore

logger = logging.getLogger(__name__)


def get_store(request: Request) -> ServerStore:
    return request.app.state.store


async def verify_token(request: Request, authorization: str = Header(None)) -> None:
    """Reject the call unless it carries the configured bearer token."""
    expected = request.app.state.config.token
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing authorization header"
        )

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not expected or not hmac.compare_digest(token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def create_app(config: ServerConfig, store: ServerStore | None = None) -> FastAPI:
    """Create the backend application.

    Args:
        config: Server configuration (token, database path, limits).
        store: Optional pre-built ServerStore; one is opened from config otherwise.

    Returns:
        Configured FastAPI application.
    """
    if store is None:
        store = ServerStore(config.db_path)
        store.connect()
    if not config.token:
        logger.warning("No server token configured; every authenticated call will be rejected")

    app = FastAPI(
        title="ledgersync backend",
        description="Row store and attachment endpoint for ledgersync clients",
        version="0.1.0",
    )
    app.state.config = config
    app.state.store = store

    @app.get("/health", response_class=PlainTextResponse)
    async def health() -> str:
        return "ok"

    # Everything below requires the bearer token, checked before the handler runs
    router = APIRouter(dependencies=[Depends(verify_token)])

    # ==================== Sync ====================

    @router.get("/sync/pull")
    def pull(
        user_id: str = "default",
        since: int = 0,
        store: ServerStore = Depends(get_store),
    ) -> dict[str, Any]:
        return store.pull(user_id, since)

    @router.post("/sync/push")
    def push(
        payload: dict[str, Any],
        user_id: str = "default",
        store: ServerStore = Depends(get_store),
    ) -> dict[str, Any]:
        try:
            version, written = store.push(user_id, payload)
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
        return {"ok": True, "version": version, "written": written}

    @router.get("/sync/version")
    def version(
        user_id: str = "default",
        store: ServerStore = Depends(get_store),
    ) -> dict[str, Any]:
        return {"version": store.version(user_id)}

    # ==================== Attachments ====================

    @router.post("/upload/image")
    async def upload_image(
        request: Request,
        x_image_key: str | None = Header(None),
        store: ServerStore = Depends(get_store),
    ) -> dict[str, Any]:
        body = await request.body()
        if not body:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty body")
        if len(body) > config.max_attachment_bytes:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=f"Attachment exceeds {config.max_attachment_bytes} bytes",
            )

        key = x_image_key or uuid.uuid4().hex
        content_type = request.headers.get("content-type", "application/octet-stream")
        store.put_attachment(key, body, content_type)
        logger.info(f"Stored attachment {key} ({len(body)} bytes)")
        return {"key": key}

    @router.get("/image/{key}")
    def get_image(key: str, store: ServerStore = Depends(get_store)) -> Response:
        found = store.get_attachment(key)
        if found is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
        data, content_type = found
        return Response(content=data, media_type=content_type)

    @router.delete("/image/{key}")
    def delete_image(key: str, store: ServerStore = Depends(get_store)) -> dict[str, Any]:
        if not store.delete_attachment(key):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
        return {"ok": True}

    app.include_router(router)

    return app
