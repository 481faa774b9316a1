"""
Import API routes: contact import into a call list.

Endpoints:
  POST   /api/v1/call-lists/:call_list_id/imports       — Upload a file, start a session
  GET    /api/v1/call-lists/:call_list_id/import-runs   — Past commits of a call list
  PATCH  /api/v1/imports/:session_id                    — Change mapping / options
  POST   /api/v1/imports/:session_id/preview            — Recompute matching stats
  POST   /api/v1/imports/:session_id/commit             — Start (or rejoin) the commit
  GET    /api/v1/imports/:session_id/progress           — Latest progress or result
  GET    /api/v1/imports/:session_id/progress/stream    — NDJSON progress stream
  DELETE /api/v1/imports/:session_id                    — Discard, or cancel a running commit

The acting user is taken from the X-Actor-Id header. Sessions are only
visible to the actor that created them.
"""

import json
import uuid
from typing import AsyncIterator, NoReturn

from fastapi import APIRouter, Depends, File, Header, HTTPException, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.database import get_db, get_sessionmaker
from app.schemas.imports import (
    CommitAccepted,
    CommitRequest,
    CommitResult,
    DiscardResponse,
    ImportRunResponse,
    MatchingStats,
    SessionProgressResponse,
    SessionUpdateRequest,
    SessionUpdateResponse,
    UploadResponse,
)
from app.services.import_errors import (
    ExecutorFault,
    ExecutorFaultKind,
    ImportEngineError,
    MappingError,
    ParseError,
    ParseErrorKind,
    SessionError,
    SessionErrorKind,
)
from app.services.import_service import ImportService, list_import_runs

router = APIRouter()

_service: ImportService | None = None


# ─── Dependencies ──────────────────────────────────────────────

def get_import_service(
    sessionmaker: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
) -> ImportService:
    """Process-wide service; sessions live in its memory."""
    global _service
    if _service is None:
        _service = ImportService(sessionmaker)
    return _service


def get_actor_id(x_actor_id: str = Header(..., min_length=1, max_length=255)) -> str:
    return x_actor_id


# ─── Helpers ───────────────────────────────────────────────────

def _raise_http(exc: ImportEngineError) -> NoReturn:
    """Translate an import error into the matching HTTP error."""
    if isinstance(exc, ParseError):
        status = 413 if exc.kind == ParseErrorKind.TOO_LARGE else 400
        detail: str | dict = exc.message
        if exc.session_id is not None:
            detail = {"message": exc.message, "kind": exc.kind.value, "session_id": str(exc.session_id)}
        raise HTTPException(status_code=status, detail=detail) from exc
    if isinstance(exc, MappingError):
        raise HTTPException(status_code=400, detail=exc.message) from exc
    if isinstance(exc, SessionError) and exc.kind == SessionErrorKind.NOT_FOUND:
        raise HTTPException(status_code=404, detail=exc.message) from exc
    if isinstance(exc, ExecutorFault) and exc.kind == ExecutorFaultKind.STORE_UNAVAILABLE:
        raise HTTPException(status_code=503, detail=exc.message) from exc
    raise HTTPException(status_code=409, detail=exc.message) from exc


def _progress_response(session) -> SessionProgressResponse:
    return SessionProgressResponse(
        session_id=session.id,
        step=session.step,
        progress=session.progress,
        result=session.result,
        last_error=session.last_error,
    )


# ─── Upload ────────────────────────────────────────────────────

@router.post(
    "/call-lists/{call_list_id}/imports",
    response_model=UploadResponse,
    status_code=201,
)
async def upload_import(
    call_list_id: uuid.UUID,
    file: UploadFile = File(...),
    actor_id: str = Depends(get_actor_id),
    service: ImportService = Depends(get_import_service),
):
    """
    Upload a CSV or XLSX file of contacts for a call list.

    Returns the detected headers, a sample of rows, a suggested column
    mapping and the matching stats for that mapping.
    """
    data = await file.read(settings.IMPORT_UPLOAD_MAX_BYTES + 1)
    if len(data) > settings.IMPORT_UPLOAD_MAX_BYTES:
        raise HTTPException(
            status_code=413,
            detail=f"File is larger than {settings.IMPORT_UPLOAD_MAX_BYTES} bytes.",
        )

    try:
        session = await service.upload(
            actor_id=actor_id,
            call_list_id=call_list_id,
            data=data,
            filename=file.filename,
        )
    except ImportEngineError as exc:
        _raise_http(exc)

    table = session.table
    return UploadResponse(
        session_id=session.id,
        step=session.step,
        headers=list(table.headers),
        preview_rows=table.sample(settings.IMPORT_PREVIEW_ROWS),
        total_rows=table.total_rows,
        suggested_mapping=session.mapping,
        matching_stats=session.matching_stats,
        warnings=list(table.warnings),
    )


@router.get(
    "/call-lists/{call_list_id}/import-runs",
    response_model=list[ImportRunResponse],
)
async def get_import_runs(
    call_list_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """Committed imports of a call list, newest first."""
    return await list_import_runs(db, call_list_id)


# ─── Mapping & Preview ────────────────────────────────────────

@router.patch("/imports/{session_id}", response_model=SessionUpdateResponse)
async def update_import(
    session_id: uuid.UUID,
    body: SessionUpdateRequest,
    actor_id: str = Depends(get_actor_id),
    service: ImportService = Depends(get_import_service),
):
    try:
        session = await service.update(
            session_id,
            actor_id,
            mapping=body.mapping,
            options=body.options,
        )
    except ImportEngineError as exc:
        _raise_http(exc)

    return SessionUpdateResponse(
        session_id=session.id,
        step=session.step,
        mapping=session.mapping,
        options=session.options,
        matching_stats=session.matching_stats,
    )


@router.post("/imports/{session_id}/preview", response_model=MatchingStats)
async def preview_import(
    session_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    service: ImportService = Depends(get_import_service),
):
    try:
        return await service.preview(session_id, actor_id)
    except ImportEngineError as exc:
        _raise_http(exc)


# ─── Commit & Progress ────────────────────────────────────────

@router.post("/imports/{session_id}/commit", response_model=CommitAccepted, status_code=202)
async def commit_import(
    session_id: uuid.UUID,
    body: CommitRequest | None = None,
    actor_id: str = Depends(get_actor_id),
    service: ImportService = Depends(get_import_service),
):
    """
    Start writing the session's rows to the call list.

    Runs in the background; poll /progress or follow /progress/stream.
    Calling again while the import runs returns the same run.
    """
    chunk_size = body.chunk_size if body else None
    try:
        session, already_running = await service.start_commit(session_id, actor_id, chunk_size)
    except ImportEngineError as exc:
        _raise_http(exc)

    return CommitAccepted(
        session_id=session.id,
        step=session.step,
        already_running=already_running,
        progress=session.progress,
        result=session.result,
    )


@router.get("/imports/{session_id}/progress", response_model=SessionProgressResponse)
async def get_import_progress(
    session_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    service: ImportService = Depends(get_import_service),
):
    try:
        session = service.get_session(session_id, actor_id)
    except ImportEngineError as exc:
        _raise_http(exc)
    return _progress_response(session)


@router.get("/imports/{session_id}/progress/stream")
async def stream_import_progress(
    session_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    service: ImportService = Depends(get_import_service),
):
    """
    Newline-delimited JSON: one ``progress`` line per snapshot, then a
    final ``result`` line. The latest snapshot is sent immediately.
    """
    try:
        session = service.get_session(session_id, actor_id)
        if session.step not in ("importing", "done"):
            raise SessionError(
                SessionErrorKind.INVALID_TRANSITION,
                f"Session is in step '{session.step}'; nothing to follow yet.",
            )
        updates = service.watch(session_id, actor_id)
    except ImportEngineError as exc:
        _raise_http(exc)

    async def lines() -> AsyncIterator[str]:
        async for update in updates:
            kind = "result" if isinstance(update, CommitResult) else "progress"
            yield json.dumps({"type": kind, "data": update.model_dump(mode="json")}) + "\n"

    return StreamingResponse(lines(), media_type="application/x-ndjson")


@router.delete("/imports/{session_id}", response_model=DiscardResponse)
async def discard_import(
    session_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    service: ImportService = Depends(get_import_service),
):
    """Discard a session, or ask its running import to stop."""
    try:
        discarded, cancelling = service.discard(session_id, actor_id)
    except ImportEngineError as exc:
        _raise_http(exc)
    return DiscardResponse(session_id=session_id, discarded=discarded, cancelling=cancelling)
