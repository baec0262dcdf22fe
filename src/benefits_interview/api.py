"""FastAPI service exposing interview sessions and coverage evaluation."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .completion import CompletionError
from .config import AppSettings
from .coverage_oracle import CoverageOracleClient
from .lifecycle import RecordUnavailableError
from .models import Role
from .sessions import InterviewSession, SessionRegistry
from .store import InterviewStore, StoreError, create_store

logger = logging.getLogger(__name__)


class TranscriptEventRequest(BaseModel):
    role: Role
    content: str
    audio_enabled: bool = False
    demo_scenario_id: Optional[str] = None


class CompleteRequest(BaseModel):
    confirmed: bool = False


class CoverageRequest(BaseModel):
    transcript: str = ""


class CoverageResponse(BaseModel):
    sections: Dict[str, bool]
    complete: bool
    degraded: bool = False
    error: Optional[str] = None
    missing_sections: List[str] = Field(default_factory=list)


def create_app(
    settings: AppSettings,
    *,
    store: InterviewStore | None = None,
    oracle: CoverageOracleClient | None = None,
    registry: SessionRegistry | None = None,
    allow_origins: Sequence[str] | None = None,
) -> FastAPI:
    """Create the FastAPI app; collaborators default to the configured ones."""

    if registry is None:
        registry = SessionRegistry(
            settings,
            store or create_store(settings.redis_url),
            oracle or CoverageOracleClient.from_settings(settings.model),
        )
    sessions = registry
    coverage_oracle = oracle or sessions.oracle

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        await sessions.aclose()

    app = FastAPI(title="Benefits Interview Engine", lifespan=lifespan)

    origins = list(allow_origins) if allow_origins else ["*"]
    allow_credentials = origins != ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _unavailable(exc: Exception) -> HTTPException:
        return HTTPException(status_code=503, detail=str(exc))

    def _require_session(session_id: str) -> InterviewSession:
        session = sessions.get(session_id)
        if session is None:
            raise HTTPException(
                status_code=404,
                detail=f"No active session '{session_id}'",
            )
        return session

    @app.post("/sessions/{session_id}/events")
    async def post_event(
        session_id: str, payload: TranscriptEventRequest
    ) -> Dict[str, Any]:
        try:
            session = await sessions.open(
                session_id,
                audio_enabled=payload.audio_enabled,
                demo_scenario_id=payload.demo_scenario_id,
                resume=True,
            )
            status = await session.handle_event(payload.role, payload.content)
        except RecordUnavailableError as exc:
            raise _unavailable(exc) from exc
        return status.to_dict()

    @app.post("/sessions/{session_id}/checkpoint")
    async def post_checkpoint(session_id: str) -> Dict[str, Any]:
        try:
            session = await sessions.open(session_id, resume=True)
            checkpoint = await session.checkpoint()
        except RecordUnavailableError as exc:
            raise _unavailable(exc) from exc
        return {
            "checkpoint": checkpoint.to_dict() if checkpoint else None,
            "status": session.status().to_dict(),
        }

    @app.post("/sessions/{session_id}/complete")
    async def post_complete(
        session_id: str, payload: CompleteRequest
    ) -> Dict[str, Any]:
        try:
            session = await sessions.open(session_id, resume=True)
            record = await session.request_manual_end(payload.confirmed)
        except (CompletionError, RecordUnavailableError) as exc:
            logger.warning("Manual completion of %s failed: %s", session_id, exc)
            raise _unavailable(exc) from exc
        return {
            "record": record.to_dict() if record else None,
            "status": session.status().to_dict(),
        }

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str) -> Dict[str, Any]:
        session = _require_session(session_id)
        return session.status().to_dict()

    @app.get("/interviews/{session_id}")
    async def get_interview(session_id: str) -> Dict[str, Any]:
        try:
            record = await sessions.store.get_by_session(session_id)
        except StoreError as exc:
            raise _unavailable(exc) from exc
        if record is None:
            raise HTTPException(
                status_code=404,
                detail=f"Interview for session '{session_id}' not found",
            )
        return record.to_dict()

    @app.get("/interviews/{session_id}/checkpoints")
    async def get_checkpoints(session_id: str) -> List[Dict[str, Any]]:
        try:
            record = await sessions.store.get_by_session(session_id)
            if record is None:
                raise HTTPException(
                    status_code=404,
                    detail=f"Interview for session '{session_id}' not found",
                )
            checkpoints = await sessions.store.list_checkpoints(record.id)
        except StoreError as exc:
            raise _unavailable(exc) from exc
        return [checkpoint.to_dict() for checkpoint in checkpoints]

    @app.post("/evaluate-coverage", response_model=CoverageResponse)
    async def evaluate_coverage(payload: CoverageRequest) -> CoverageResponse:
        if not payload.transcript.strip():
            raise HTTPException(status_code=400, detail="Transcript is required")
        evaluation = await coverage_oracle.evaluate(payload.transcript)
        coverage = evaluation.coverage
        return CoverageResponse(
            sections=coverage.to_dict(),
            complete=coverage.complete,
            degraded=evaluation.degraded,
            error=str(evaluation.error) if evaluation.error else None,
            missing_sections=coverage.missing(),
        )

    return app


def run_api_server(
    settings: AppSettings,
    *,
    host: str = "127.0.0.1",
    port: int = 8081,
    allow_origins: Sequence[str] | None = None,
    log_level: str = "info",
) -> None:
    """Start the FastAPI server."""

    app = create_app(settings, allow_origins=allow_origins)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=log_level,
    )
