"""Entry point for the FastAPI-powered queue service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from . import __version__
from .config import settings
from .database import Database
from .models import GroupPolicy, QueueItem
from .services.endless_queue import EndlessQueueService
from .services.queue_state import SqlStateStore
from .services.ratings import RatingRepository
from .services.tmdb import TMDBClient
from .utils import parse_title_key

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Rating screens top the queue up once it gets this short.
REFILL_AFTER_RATING_THRESHOLD = 2

app: FastAPI


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    tmdb_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.tmdb_api_url),
            timeout=httpx.Timeout(15.0, connect=5.0),
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    tmdb = TMDBClient(settings, tmdb_http_client)
    queue_service = EndlessQueueService(
        settings,
        tmdb,
        SqlStateStore(database.session_factory),
        RatingRepository(database.session_factory),
    )

    fastapi_app.state.queue_service = queue_service
    fastapi_app.state.database = database

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Endless title queues for group movie ratings",
        version=__version__,
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_queue_service(fastapi_app: FastAPI) -> EndlessQueueService:
    service = getattr(fastapi_app.state, "queue_service", None)
    if not isinstance(service, EndlessQueueService):
        raise RuntimeError("Queue service not initialised")
    return service


async def _json_object(request: Request) -> dict[str, Any]:
    if not (await request.body()).strip():
        return {}
    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Request body must be JSON") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")
    return payload


def _title_id_from(payload: dict[str, Any]) -> str:
    title_id = payload.get("titleId", payload.get("title_id"))
    if not isinstance(title_id, str) or not title_id.strip():
        raise HTTPException(status_code=400, detail="titleId is required")
    if parse_title_key(title_id) is None:
        raise HTTPException(status_code=400, detail="titleId must look like tmdb:<movie|tv>:<id>")
    return title_id.strip()


def _items_payload(items: list[QueueItem]) -> list[dict[str, Any]]:
    return [item.model_dump(mode="json") for item in items]


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.post("/api/groups/{group_id}/members/{member_id}/queue")
    async def ensure_queue_endpoint(
        request: Request, group_id: str, member_id: str
    ) -> JSONResponse:
        service = get_queue_service(fastapi_app)
        payload = await _json_object(request)
        try:
            policy = GroupPolicy.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(
                status_code=400, detail=exc.errors(include_url=False, include_context=False)
            ) from exc

        items = await service.ensure_queue(group_id, member_id, policy)
        status = await service.queue_status(group_id, member_id, policy)
        return JSONResponse({"items": _items_payload(items), "status": status.to_payload()})

    @fastapi_app.get("/api/groups/{group_id}/members/{member_id}/queue")
    async def peek_queue_endpoint(group_id: str, member_id: str) -> JSONResponse:
        service = get_queue_service(fastapi_app)
        items = await service.peek_queue(group_id, member_id)
        return JSONResponse({"items": _items_payload(items)})

    @fastapi_app.post("/api/groups/{group_id}/members/{member_id}/queue/consume")
    async def consume_endpoint(
        request: Request, group_id: str, member_id: str
    ) -> JSONResponse:
        service = get_queue_service(fastapi_app)
        payload = await _json_object(request)
        title_id = _title_id_from(payload)
        await service.consume(group_id, member_id, title_id)
        items = await service.peek_queue(group_id, member_id)
        return JSONResponse({"items": _items_payload(items)})

    @fastapi_app.post("/api/groups/{group_id}/members/{member_id}/ratings")
    async def rating_endpoint(
        request: Request, group_id: str, member_id: str
    ) -> JSONResponse:
        service = get_queue_service(fastapi_app)
        payload = await _json_object(request)
        title_id = _title_id_from(payload)
        value = payload.get("value")
        if isinstance(value, bool) or not isinstance(value, int):
            raise HTTPException(status_code=400, detail="value must be an integer")
        policy: GroupPolicy | None = None
        raw_policy = payload.get("policy")
        if raw_policy is not None:
            try:
                policy = GroupPolicy.model_validate(raw_policy)
            except ValidationError as exc:
                raise HTTPException(
                    status_code=400,
                    detail=exc.errors(include_url=False, include_context=False),
                ) from exc

        try:
            await service.record_rating(group_id, member_id, title_id, value)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        items = await service.peek_queue(group_id, member_id)
        if policy is not None and len(items) <= REFILL_AFTER_RATING_THRESHOLD:
            items = await service.ensure_queue(group_id, member_id, policy)
        return JSONResponse({"items": _items_payload(items)})


app = create_app()
