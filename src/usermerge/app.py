"""FastAPI application for usermerge."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated
from uuid import UUID

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncConnection

from usermerge import __version__
from usermerge.config import Settings, settings
from usermerge.db import engine, get_connection
from usermerge.errors import (
    EntityNotFoundError,
    MergeError,
    PreconditionError,
    SameEntityError,
)
from usermerge.process.orchestrator import MergeOrchestrator, MergeResult


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler."""
    yield
    await engine.dispose()


app = FastAPI(
    title="usermerge",
    description="Consolidate two user records across a relational schema",
    version=__version__,
    lifespan=lifespan,
)


class MergeRequest(BaseModel):
    """Body of POST /merges."""

    base_id: int = Field(description="User that is kept")
    merge_id: int = Field(description="User that is merged into the base user")
    dry_run: bool | None = Field(
        default=None, description="Roll back at the end; defaults to the server setting"
    )
    actor: str | None = None


class TableOutcomeResponse(BaseModel):
    table: str
    tier: str
    queries: int
    rows_affected: int


class MergeResponse(BaseModel):
    """Outcome of a successful merge run."""

    run_id: UUID
    base_id: int
    merge_id: int
    dry_run: bool
    committed: bool
    rows_affected: int
    tables: list[TableOutcomeResponse]

    @classmethod
    def from_result(cls, result: MergeResult) -> "MergeResponse":
        return cls(
            run_id=result.run_id,
            base_id=result.base_id,
            merge_id=result.merge_id,
            dry_run=result.dry_run,
            committed=result.committed,
            rows_affected=result.rows_affected,
            tables=[
                TableOutcomeResponse(
                    table=outcome.table,
                    tier=outcome.tier.value,
                    queries=outcome.queries,
                    rows_affected=outcome.rows_affected,
                )
                for outcome in result.tables
            ],
        )


def get_settings() -> Settings:
    return settings


def status_for(error: MergeError) -> int:
    """HTTP status code for a merge failure."""
    if isinstance(error, SameEntityError):
        return 422
    if isinstance(error, EntityNotFoundError):
        return 404
    if isinstance(error, PreconditionError):
        return 409
    return 500


@app.exception_handler(MergeError)
async def merge_error_handler(request: Request, exc: MergeError) -> JSONResponse:
    return JSONResponse(status_code=status_for(exc), content=exc.to_payload())


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok", "version": __version__}


@app.post("/merges")
async def create_merge(
    request: MergeRequest,
    connection: Annotated[AsyncConnection, Depends(get_connection)],
    config: Annotated[Settings, Depends(get_settings)],
) -> MergeResponse:
    """Merge `merge_id` into `base_id`."""
    orchestrator = MergeOrchestrator(connection, config=config)
    result = await orchestrator.merge(
        request.base_id,
        request.merge_id,
        actor=request.actor,
        dry_run=request.dry_run,
    )
    return MergeResponse.from_result(result)
