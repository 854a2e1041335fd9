from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse

from .errors import BUSY, CONSTRAINT, StorageError
from .importers import IMPORT_SOURCES, parse_export, source_label
from .schemas import (
    ActivityResponse,
    BrowseResponse,
    ConversationBatchRequest,
    ConversationResponse,
    ImportResponse,
    ImportSourceResponse,
    MessageResponse,
    ReindexResponse,
    SearchResponse,
    SortOrder,
    SourceStatsResponse,
    StatsResponse,
)
from .service_container import Services
from .utils import parse_day_or_millis

logger = logging.getLogger(__name__)

STORAGE_ERROR_STATUS = {BUSY: 503, CONSTRAINT: 409}


def create_app(services: Services) -> FastAPI:
    app = FastAPI(title="Memex Archive", version="0.1.0")
    store = services.store

    @app.on_event("startup")
    async def _startup() -> None:
        await asyncio.to_thread(store.open)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await asyncio.to_thread(store.close)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"ok": store.is_open}

    @app.get("/v1/sources", response_model=list[ImportSourceResponse])
    async def list_sources() -> list[ImportSourceResponse]:
        return [ImportSourceResponse(id=s.id, label=s.label, available=s.available) for s in IMPORT_SOURCES]

    @app.get("/v1/search", response_model=SearchResponse)
    async def search(
        q: str = "",
        source: str | None = None,
        date_from: str | None = None,
        date_to: str | None = None,
        limit: int = Query(default=50, ge=1, le=100),
        offset: int = Query(default=0, ge=0),
        sort: SortOrder = "last_occurrence_desc",
    ) -> SearchResponse:
        result = await store.search(
            q,
            source=source or None,
            date_from=parse_day_or_millis(date_from),
            date_to=parse_day_or_millis(date_to, end_of_day=True),
            limit=limit,
            offset=offset,
            sort=sort,
        )
        return SearchResponse(query=q, **result)

    @app.get("/v1/conversations", response_model=BrowseResponse)
    async def browse_conversations(
        source: str | None = None,
        date_from: str | None = None,
        date_to: str | None = None,
        limit: int = Query(default=50, ge=1, le=100),
        offset: int = Query(default=0, ge=0),
        sort: SortOrder = "last_occurrence_desc",
    ) -> BrowseResponse:
        result = await store.browse_conversations(
            source=source or None,
            date_from=parse_day_or_millis(date_from),
            date_to=parse_day_or_millis(date_to, end_of_day=True),
            limit=limit,
            offset=offset,
            sort=sort,
        )
        return BrowseResponse(rows=result["rows"], total_matches=result["total_matches"])

    @app.post("/v1/conversations/batch", response_model=ImportResponse)
    async def insert_conversations(request: ConversationBatchRequest) -> ImportResponse:
        result = await store.insert_conversations([c.model_dump() for c in request.conversations])
        return ImportResponse(conversation_count=result.conversation_count, message_count=result.message_count)

    @app.get("/v1/conversations/{conversation_id}", response_model=ConversationResponse)
    async def get_conversation(conversation_id: str) -> ConversationResponse:
        conv = await store.get_conversation(conversation_id)
        if conv is None:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return ConversationResponse(**conv)

    @app.get("/v1/conversations/{conversation_id}/messages", response_model=list[MessageResponse])
    async def get_messages(conversation_id: str) -> list[MessageResponse]:
        if await store.get_conversation(conversation_id) is None:
            raise HTTPException(status_code=404, detail="Conversation not found")
        messages = await store.get_messages(conversation_id)
        return [MessageResponse(**m) for m in messages]

    @app.post("/v1/imports/{source}", response_model=ImportResponse)
    async def import_export(source: str, payload: Any = Body(...)) -> ImportResponse:
        parsed = await asyncio.to_thread(parse_export, source, payload)
        result = await store.insert_conversations(parsed)
        logger.info(
            "%s import complete: %s conversations, %s messages",
            source_label(source),
            result.conversation_count,
            result.message_count,
        )
        return ImportResponse(source=source, conversation_count=result.conversation_count, message_count=result.message_count)

    @app.get("/v1/stats", response_model=StatsResponse)
    async def stats() -> StatsResponse:
        return StatsResponse(**(await store.get_stats()))

    @app.get("/v1/stats/sources", response_model=list[SourceStatsResponse])
    async def source_stats() -> list[SourceStatsResponse]:
        rows = await store.get_source_stats()
        return [SourceStatsResponse(label=source_label(r["source"]), **r) for r in rows]

    @app.get("/v1/stats/activity", response_model=ActivityResponse)
    async def activity(days: int = Query(default=30, ge=1, le=366)) -> ActivityResponse:
        counts = await store.get_activity_by_day(days)
        return ActivityResponse(days=days, counts=counts)

    @app.delete("/v1/data")
    async def clear_all_data() -> dict[str, Any]:
        await store.clear_all_data()
        return {"ok": True}

    @app.post("/v1/maintenance/reindex", response_model=ReindexResponse)
    async def reindex() -> ReindexResponse:
        return ReindexResponse(indexed_message_count=await store.rebuild_index())

    @app.exception_handler(StorageError)
    async def storage_error_handler(_request: Any, exc: StorageError) -> JSONResponse:
        return JSONResponse(
            status_code=STORAGE_ERROR_STATUS.get(exc.kind, 500),
            content={"detail": exc.message, "kind": exc.kind},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(_request: Any, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    return app
