"""FastAPI app exposing comparisons as Server-Sent Events plus the history API."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse

from twinstream.app import TwinStreamApp
from twinstream.core.errors import StorageError, ValidationError
from twinstream.engine.orchestrator import DISCONNECT_REASON, ComparisonRequest, ComparisonRun
from twinstream.log import get_logger
from twinstream.transport.channel import EventChannel
from twinstream.transport.schemas import CleanupRequest, CompareRequest, DeleteManyRequest

logger = get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def _finish_after(run: ComparisonRun, channel: EventChannel) -> None:
    try:
        await run.wait()
    finally:
        await channel.finish()


async def stream_comparison(
    ctx: TwinStreamApp, request: ComparisonRequest
) -> AsyncIterator[str]:
    """Run one comparison and yield its SSE frames.

    Leaving the generator early (client gone) cancels the comparison; its
    outcome is still committed with the partial state.
    """
    channel = EventChannel(maxsize=ctx.config.engine.channel_buffer)
    run = ctx.orchestrator.start(request, channel.send)
    finisher = asyncio.create_task(_finish_after(run, channel))
    try:
        async for frame in channel.frames():
            yield frame
    finally:
        run.cancel(DISCONNECT_REASON)
        channel.close(DISCONNECT_REASON)
        if not finisher.done():
            finisher.cancel()


def create_app(ctx: TwinStreamApp) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await ctx.start()
        yield
        await ctx.stop()

    app = FastAPI(title="twinstream", version="0.1.0", lifespan=lifespan)
    app.state.ctx = ctx
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ctx.config.server.allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(StorageError)
    async def _storage_error(request: Request, exc: StorageError):
        logger.error("storage_request_failed", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=503, content={"detail": "History store unavailable"})

    def _accept(prompt: Optional[str], model1: Optional[str], model2: Optional[str]):
        limit = ctx.config.engine.max_prompt_length
        if prompt is not None and len(prompt) > limit:
            raise ValidationError(f"Prompt exceeds {limit} characters")
        request = ctx.orchestrator.validate(prompt, model1, model2)
        return StreamingResponse(
            stream_comparison(ctx, request),
            media_type="text/event-stream",
            headers={**SSE_HEADERS, "X-Request-Id": request.request_id},
        )

    @app.post("/api/compare")
    async def compare(body: CompareRequest):
        return _accept(body.prompt, body.model_id1, body.model_id2)

    @app.get("/api/compare/stream")
    async def compare_stream(
        prompt: Optional[str] = None,
        model1: Optional[str] = None,
        model2: Optional[str] = None,
    ):
        """EventSource-compatible variant of POST /api/compare."""
        return _accept(prompt, model1, model2)

    @app.get("/api/models")
    async def list_models():
        return {
            "models": [m.to_dict() for m in ctx.registry.all()],
            "defaults": ctx.config.defaults.model_dump(),
        }

    @app.get("/api/history")
    async def list_history(
        page: int = Query(default=1, ge=1),
        page_size: int = Query(default=20, ge=1, le=100),
        search: Optional[str] = None,
    ):
        result = await ctx.history.list(page=page, page_size=page_size, search=search)
        return result.to_dict()

    @app.get("/api/history/stats")
    async def history_stats():
        stats = await ctx.history.statistics()
        return stats.to_dict()

    @app.get("/api/history/export")
    async def export_history(format: str = Query(default="json", pattern="^(json|csv)$")):
        body = await ctx.history.export(format)
        media_type = "text/csv" if format == "csv" else "application/json"
        return Response(
            content=body,
            media_type=media_type,
            headers={"Content-Disposition": f'attachment; filename="history.{format}"'},
        )

    @app.post("/api/history/delete")
    async def delete_many(body: DeleteManyRequest):
        return {"deleted": await ctx.history.delete_many(body.ids)}

    @app.post("/api/history/cleanup")
    async def cleanup_history(body: CleanupRequest):
        deleted = await ctx.history.cleanup(
            older_than_days=body.older_than_days,
            keep_count=body.keep_count,
            remove_errors=body.remove_errors,
        )
        return {"deleted": deleted}

    @app.get("/api/history/{record_id}")
    async def get_history_item(record_id: str):
        record = await ctx.history.get(record_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"History record '{record_id}' not found")
        return record.to_dict()

    @app.delete("/api/history/{record_id}")
    async def delete_history_item(record_id: str):
        return {"deleted": await ctx.history.delete(record_id)}

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "models": len(ctx.registry),
            "activeComparisons": ctx.orchestrator.active_runs,
            "services": await ctx.service_manager.health_check_all(),
        }

    return app
