"""
Alert/Incident Sync - Operations API

Thin FastAPI surface over the ingestion pipeline, the drop-folder monitor and
the reconciler. Record CRUD is not exposed here.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from alertsync.config import Settings, get_settings
from alertsync.errors import ConflictError, IngestFileError, RecordNotFoundError
from alertsync.models.alert import AlertRecord
from alertsync.models.ingest_io import FileReport, IngestInput, ReconcileSummary, RowIssue, RowKind
from alertsync.pipeline import ingest
from alertsync.services.monitor import DropFolderMonitor
from alertsync.services.records import RecordService
from alertsync.storage.memory import InMemoryStore

logger = logging.getLogger(__name__)


# ============================================================================
# Request / Response Models
# ============================================================================

class IngestRequest(BaseModel):
    file_path: Path
    kind: RowKind


class IngestResponse(BaseModel):
    file_path: Path
    kind: RowKind
    rows_read: int
    records: int
    skipped: list[RowIssue] = Field(default_factory=list)
    parse_warnings: list[str] = Field(default_factory=list)


# ============================================================================
# Application
# ============================================================================

def create_app(settings: Optional[Settings] = None, store: Optional[InMemoryStore] = None) -> FastAPI:
    """Build the API around one store, record service and drop-folder monitor."""
    settings = settings or get_settings()
    settings.validate_paths()

    store = store if store is not None else InMemoryStore()
    records = RecordService(store)
    monitor = DropFolderMonitor(settings, records)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.monitoring_enabled:
            monitor.start(settings.monitoring_interval_seconds)
        yield
        await monitor.stop()

    app = FastAPI(
        title="Alert/Incident Sync API",
        description="CSV ingestion and alert/incident reconciliation",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.records = records
    app.state.monitor = monitor

    # ------------------------------------------------------------------
    # Error mapping
    # ------------------------------------------------------------------

    @app.exception_handler(RecordNotFoundError)
    async def not_found_handler(request: Request, exc: RecordNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(IngestFileError)
    async def ingest_file_handler(request: Request, exc: IngestFileError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "monitoring": monitor.running,
            "records": store.counts(),
        }

    @app.post("/api/v1/ingest", response_model=IngestResponse)
    async def ingest_file(request: IngestRequest):
        """Parse one CSV file under the drop folder and report what would be stored.

        Nothing is persisted. Paths outside the drop folder are rejected.
        """
        resolved = request.file_path.resolve()
        if not resolved.is_relative_to(settings.csv_drop_path.resolve()):
            logger.warning("api.ingest_rejected", extra={"file": str(request.file_path)})
            raise IngestFileError(str(request.file_path), "path is outside the drop folder")
        output = await ingest.run(IngestInput(file_path=resolved, kind=request.kind))
        return IngestResponse(
            file_path=output.file_path,
            kind=output.kind,
            rows_read=output.rows_read,
            records=len(output.records),
            skipped=output.skipped,
            parse_warnings=output.parse_warnings,
        )

    @app.post("/api/v1/drop-folder/scan", response_model=list[FileReport])
    async def scan_drop_folder():
        """Run one monitor cycle over the drop folder."""
        return await monitor.process_all_files()

    @app.post("/api/v1/reconcile/alerts/{alert_id}", response_model=AlertRecord)
    async def reconcile_alert(alert_id: str):
        return await records.reconciler.reconcile_alert(alert_id)

    @app.post("/api/v1/reconcile/incidents/{incident_id}", response_model=ReconcileSummary)
    async def reconcile_incident(incident_id: str):
        incident = await store.get_incident(incident_id)
        if incident is None:
            raise HTTPException(status_code=404, detail=f"Incident with ID {incident_id} not found")
        return await records.reconciler.reconcile_incident(incident)

    return app


_settings = get_settings()
logging.basicConfig(level=getattr(logging, _settings.log_level.upper(), logging.INFO))

app = create_app(_settings)


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
