"""FastAPI application: the HTTP JSON API and the progress WebSocket.

Caller identity comes from the ``X-User-Id`` header, set by the upstream
authentication layer. Every route is scoped to that caller.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.websockets import WebSocket, WebSocketDisconnect
from pydantic import ValidationError as SchemaError
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .broadcaster import Subscription
from .config import Settings
from .errors import (
    AnalysisNotFound,
    InvalidTransition,
    RepoLensError,
    StorageFailure,
    ValidationError,
)
from .events import (
    EventType,
    PingMessage,
    ProgressEvent,
    ProgressSession,
    ProtocolError,
    SubscribeMessage,
    UnsubscribeMessage,
    error_message,
    parse_client_message,
)
from .pipeline import AnalysisOptions
from .schemas import (
    AnalysisList,
    AnalysisResponse,
    AnalysisStats,
    AnalyzeRequest,
    FileList,
    HealthResponse,
    Pagination,
    ProgressSnapshot,
    SuggestionsRequest,
    SuggestionsResponse,
    ValidateRequest,
    ValidateResponse,
)
from .service import AnalysisService, build_service
from .store import AnalysisRecord, page_count

logger = logging.getLogger(__name__)

SORT_FIELDS = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "repositoryUrl": "repository_url",
}


# --- Dependencies ---

async def get_service(request: Request) -> AnalysisService:
    """Get AnalysisService from app state."""
    return request.app.state.service


async def get_owner(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller identity from the upstream auth layer, or 401."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Authentication required")
    return x_user_id.strip()


def to_response(
    record: AnalysisRecord,
    include_data: bool = False,
    include_files: bool = False,
    include_metrics: bool = True,
) -> AnalysisResponse:
    data = record.analysis_data
    response = AnalysisResponse(
        analysis_id=record.id,
        repository_url=record.repository_url,
        branch=record.branch,
        depth=record.depth,
        include_dependencies=record.include_dependencies,
        status=record.status,
        summary=data.summary if data else None,
        insights=data.insights if data else None,
        metrics=record.metrics if include_metrics else None,
        error=record.error,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )
    if data is not None and include_data:
        response.analysis_data = data if include_files else data.model_copy(update={"files": []})
    return response


# --- Routes ---

router = APIRouter(prefix="/analyze", tags=["analyze"])


@router.post("/repository", response_model=AnalysisResponse, response_model_exclude_none=True)
async def analyze_repository(
    body: AnalyzeRequest,
    response: Response,
    owner: str = Depends(get_owner),
    service: AnalysisService = Depends(get_service),
):
    options = AnalysisOptions(
        url=body.url,
        branch=body.branch,
        depth=body.depth,
        include_dependencies=body.include_dependencies,
    )
    record = await service.start(owner, options, wait=body.wait)
    if not body.wait:
        response.status_code = 202
    return to_response(record)


@router.post("/validate", response_model=ValidateResponse, response_model_exclude_none=True)
async def validate_repository(
    body: ValidateRequest,
    owner: str = Depends(get_owner),
    service: AnalysisService = Depends(get_service),
):
    return await service.validate(body.url)


@router.get("", response_model=AnalysisList, response_model_exclude_none=True)
async def list_analyses(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = Query(None, pattern="^(pending|analyzing|completed|failed)$"),
    sort_by: str = Query("createdAt", alias="sortBy", pattern="^(createdAt|updatedAt|repositoryUrl)$"),
    order: str = Query("desc", pattern="^(asc|desc)$"),
    owner: str = Depends(get_owner),
    service: AnalysisService = Depends(get_service),
):
    records, total = await service.list(
        owner, status=status, page=page, limit=limit, sort_by=SORT_FIELDS[sort_by], order=order
    )
    return AnalysisList(
        analyses=[to_response(r, include_metrics=False) for r in records],
        pagination=Pagination(page=page, limit=limit, total=total, pages=page_count(total, limit)),
    )


@router.get("/stats", response_model=AnalysisStats)
async def analysis_stats(
    owner: str = Depends(get_owner),
    service: AnalysisService = Depends(get_service),
):
    return AnalysisStats(**await service.stats(owner))


@router.get("/{analysis_id}", response_model=AnalysisResponse, response_model_exclude_none=True)
async def get_analysis(
    analysis_id: str,
    include_files: bool = Query(False, alias="includeFiles"),
    include_metrics: bool = Query(True, alias="includeMetrics"),
    owner: str = Depends(get_owner),
    service: AnalysisService = Depends(get_service),
):
    record = await service.get(analysis_id, owner)
    return to_response(record, include_data=True, include_files=include_files, include_metrics=include_metrics)


@router.get("/{analysis_id}/files", response_model=FileList)
async def get_analysis_files(
    analysis_id: str,
    path: str = Query(""),
    file_type: str = Query("all", alias="type", pattern="^(all|file|directory)$"),
    owner: str = Depends(get_owner),
    service: AnalysisService = Depends(get_service),
):
    files = await service.files(analysis_id, owner, path=path, file_type=file_type)
    return FileList(analysis_id=analysis_id, files=files, total=len(files))


@router.get("/{analysis_id}/progress", response_model=ProgressSnapshot)
async def get_analysis_progress(
    analysis_id: str,
    owner: str = Depends(get_owner),
    service: AnalysisService = Depends(get_service),
):
    return ProgressSnapshot(**await service.progress_snapshot(analysis_id, owner))


@router.post("/{analysis_id}/suggestions", response_model=SuggestionsResponse)
async def analysis_suggestions(
    analysis_id: str,
    body: Optional[SuggestionsRequest] = None,
    owner: str = Depends(get_owner),
    service: AnalysisService = Depends(get_service),
):
    aspects = body.aspects if body else None
    return SuggestionsResponse(**await service.suggestions(analysis_id, owner, aspects))


@router.delete("/{analysis_id}", status_code=204)
async def delete_analysis(
    analysis_id: str,
    owner: str = Depends(get_owner),
    service: AnalysisService = Depends(get_service),
):
    await service.delete(analysis_id, owner)
    return Response(status_code=204)


# --- Progress channel ---

class ProgressChannel:
    """One WebSocket connection to the progress broadcaster."""

    def __init__(self, websocket: WebSocket, service: AnalysisService, owner: str):
        self.websocket = websocket
        self.service = service
        self.owner = owner
        self.session = ProgressSession()
        self.subscription: Subscription | None = None
        self._forwarder: asyncio.Task | None = None
        self._send_lock = asyncio.Lock()

    async def send(self, message: dict[str, Any]) -> None:
        async with self._send_lock:
            await self.websocket.send_json(message)

    async def serve(self) -> None:
        try:
            while True:
                raw = await self.websocket.receive_text()
                await self.handle(raw)
        except WebSocketDisconnect:
            logger.debug(f"Progress channel closed for {self.owner}")
        finally:
            self._drop_subscription()
            self.session.close()

    async def handle(self, raw: str) -> None:
        try:
            message = parse_client_message(raw)
        except (SchemaError, ValueError):
            await self.send(error_message("Unknown or malformed message"))
            return

        try:
            if isinstance(message, SubscribeMessage):
                await self.subscribe(message.analysis_id)
            elif isinstance(message, UnsubscribeMessage):
                self.session.unsubscribe()
                analysis_id = self._drop_subscription()
                await self.send(ProgressEvent(analysis_id, EventType.UNSUBSCRIBED).to_dict())
            elif isinstance(message, PingMessage):
                await self.send(ProgressEvent(None, EventType.PONG).to_dict())
        except ProtocolError as e:
            await self.send(error_message(str(e), self.session.analysis_id))

    async def subscribe(self, analysis_id: str) -> None:
        if self.subscription is not None and self.subscription.closed:
            # Previous topic ended; allow moving on to another analysis
            self._drop_subscription()
            self.session.unsubscribe()
        if self.subscription is not None:
            raise ProtocolError(f"Already subscribed to {self.subscription.analysis_id}")
        try:
            record = await self.service.get(analysis_id, self.owner)
        except AnalysisNotFound:
            await self.send(error_message("Analysis not found", analysis_id))
            return

        self.session.subscribe(analysis_id)
        sub = self.service.broadcaster.subscribe(analysis_id)
        self.subscription = sub
        snapshot = sub.snapshot
        if snapshot is None:
            # No live topic: the run has not started yet or is long finished
            snapshot = await self.service.progress_snapshot(analysis_id, self.owner)
            if record.is_terminal:
                sub.close()

        await self.send(ProgressEvent(
            analysis_id,
            EventType.SUBSCRIBED,
            {"snapshot": ProgressSnapshot(**snapshot).model_dump(mode="json", by_alias=True)},
        ).to_dict())
        self._forwarder = asyncio.create_task(self._forward(sub))

    async def _forward(self, sub: Subscription) -> None:
        try:
            async for event in sub:
                self.session.receiving()
                await self.send(event.to_dict())
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug(f"Stopped forwarding {sub.analysis_id}: {e}")

    def _drop_subscription(self) -> str | None:
        if self._forwarder is not None:
            self._forwarder.cancel()
            self._forwarder = None
        sub, self.subscription = self.subscription, None
        if sub is None:
            return None
        self.service.broadcaster.unsubscribe(sub)
        return sub.analysis_id


# --- App factory ---

def error_status(exc: RepoLensError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, AnalysisNotFound):
        return 404
    if isinstance(exc, InvalidTransition):
        return 409
    return 500


def create_app(settings: Settings | None = None, service: AnalysisService | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: runtime options, read from the environment when omitted
        service: prebuilt AnalysisService; built from ``settings`` when omitted

    Returns:
        Configured FastAPI application
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.service = service or build_service(settings)
        yield
        await app.state.service.shutdown()
        app.state.service.close()

    app = FastAPI(
        title="RepoLens API",
        description="Repository analysis with live progress",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RepoLensError)
    async def repolens_error_handler(request: Request, exc: RepoLensError):
        status = error_status(exc)
        if status == 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message} {exc.diagnostic}")
        if isinstance(exc, StorageFailure) and status == 500:
            message = exc.public_message(True) if settings.debug else "Internal error"
        else:
            message = exc.public_message(settings.debug)
        return JSONResponse(status_code=status, content={"error": message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()]
        return JSONResponse(status_code=400, content={"error": "Invalid request", "details": details})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    app.include_router(router, prefix="/api")

    @app.get("/api/health", response_model=HealthResponse)
    async def health_check():
        return HealthResponse(status="ok", version=__version__)

    @app.websocket("/api/ws/progress")
    async def progress_socket(websocket: WebSocket):
        owner = websocket.headers.get("x-user-id") or websocket.query_params.get("userId")
        await websocket.accept()
        if not owner:
            await websocket.send_json(error_message("Authentication required"))
            await websocket.close(code=1008)
            return
        await ProgressChannel(websocket, websocket.app.state.service, owner).serve()

    logger.info("FastAPI app created with all routes registered")
    return app
