"""
Converge Kernel API — FastAPI endpoints.

Exposes the kernel's functionality via a REST API for:
- Unit status inspection and diffs
- Operator actions (force sync, delete with finalizer bypass)
- Reconciler control
- Source ingestion (push notifications and polling)
- Revision history and rollback
"""

import asyncio
import contextlib
import logging
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from converge_kernel.composition.resolver import CompositionResolver
from converge_kernel.config import ConfigError, KernelConfig
from converge_kernel.drift.detector import DriftDetector
from converge_kernel.errors import (
    ApplyError,
    ConflictError,
    DependencyCycleError,
    DriftError,
    KernelError,
    TemplateError,
    UnitNotFoundError,
    ValidationError,
)
from converge_kernel.execution.adapter import AdapterRegistry
from converge_kernel.lineage.revisions import RevisionLog
from converge_kernel.models.source import SourceDocument
from converge_kernel.reconciler.scheduler import ReconciliationScheduler
from converge_kernel.source.ingest import SourceIngestor
from converge_kernel.source.manifests import DirectorySource, load_documents
from converge_kernel.source.poller import SourcePoller
from converge_kernel.store.resource_store import ResourceStore

logger = logging.getLogger(__name__)

# Most specific first
_STATUS_CODES = [
    (UnitNotFoundError, 404),
    (ConflictError, 409),
    (DependencyCycleError, 409),
    (DriftError, 409),
    (ValidationError, 422),
    (TemplateError, 422),
    (ApplyError, 502),
]


def status_code_for(error: KernelError) -> int:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


# --- Request/Response Models ---

class IngestRequest(BaseModel):
    documents: List[SourceDocument] = []
    manifests: Optional[str] = None         # Raw multi-document YAML
    commit: Optional[str] = None


class ReconcilerTriggerResponse(BaseModel):
    results: list
    pass_count: int


# --- Application Factory ---

def create_app(
    store: Optional[ResourceStore] = None,
    adapters: Optional[AdapterRegistry] = None,
    revision_log: Optional[RevisionLog] = None,
    config: Optional[KernelConfig] = None,
    background: bool = False,
) -> FastAPI:
    """
    Create and configure the FastAPI application. With ``background`` the
    scheduler heartbeat and source poller run for the app's lifetime.
    """
    config = config or KernelConfig()
    rs = store or ResourceStore()
    registry = adapters or AdapterRegistry()
    log = revision_log or RevisionLog(config.source.revision_db)

    resolver = CompositionResolver(rs)
    drift = DriftDetector(rs, registry, config.drift)
    scheduler = ReconciliationScheduler(
        store=rs,
        resolver=resolver,
        adapters=registry,
        config=config.scheduler,
        drift_detector=drift,
    )
    ingestor = SourceIngestor(rs, log)
    poller = None
    if config.source.path:
        poller = SourcePoller(
            DirectorySource(config.source.path), ingestor, config.source.poll_schedule
        )

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        stop_event = asyncio.Event()
        tasks = []
        if background:
            tasks.append(asyncio.create_task(scheduler.run_async(stop_event)))
            if poller is not None:
                tasks.append(asyncio.create_task(poller.run_async(stop_event)))
        try:
            yield
        finally:
            stop_event.set()
            for task in tasks:
                await task
            scheduler.close()

    app = FastAPI(
        title="Converge Kernel API",
        description="Declarative reconciliation engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Store components on app state for access in endpoints
    app.state.store = rs
    app.state.adapters = registry
    app.state.revision_log = log
    app.state.scheduler = scheduler
    app.state.ingestor = ingestor
    app.state.poller = poller

    @app.exception_handler(KernelError)
    async def kernel_error_handler(request: Request, exc: KernelError):
        return JSONResponse(
            status_code=status_code_for(exc),
            content={
                "error": type(exc).__name__,
                "detail": str(exc),
                "exit_code": exc.exit_code,
            },
        )

    # === UNITS ===

    @app.get("/units")
    def list_units(kind: Optional[str] = None):
        """Status of every tracked unit, in wave order."""
        units = sorted(scheduler.units(), key=lambda u: (u.wave.effective, u.id))
        return [
            u.status().model_dump(mode="json")
            for u in units
            if kind is None or u.kind.value == kind
        ]

    @app.get("/units/{unit_id:path}/diff")
    def diff_unit(unit_id: str):
        """Desired vs live state for one unit."""
        return scheduler.diff(unit_id)

    @app.post("/units/{unit_id:path}/sync")
    def sync_unit(unit_id: str):
        """Force a re-apply and run one reconciliation pass."""
        scheduler.force_sync(unit_id)
        results = scheduler.reconcile_once()
        return {
            "unit": scheduler.get_unit(unit_id).status().model_dump(mode="json"),
            "results": results,
        }

    @app.post("/units/{unit_id:path}/delete")
    def delete_unit(unit_id: str, force: bool = False):
        """Delete a unit and its dependents; ``force`` skips the external delete."""
        affected = scheduler.delete_unit(unit_id, force=force)
        return {
            "unit": scheduler.get_unit(unit_id).status().model_dump(mode="json"),
            "affected": affected,
        }

    @app.get("/units/{unit_id:path}")
    def get_unit(unit_id: str):
        unit = scheduler.get_unit(unit_id)
        entry = rs.get(unit_id)
        return {
            "status": unit.status().model_dump(mode="json"),
            "depends_on": unit.depends_on,
            "owner": unit.owner,
            "wave": unit.wave.model_dump(),
            "spec": entry.spec if entry else None,
            "generation": entry.generation if entry else None,
            "revision": entry.revision if entry else None,
        }

    # === RECONCILER ===

    @app.get("/reconciler/status")
    def reconciler_status():
        """Current scheduler status."""
        units = scheduler.units()
        phases: dict = {}
        for unit in units:
            phases[unit.phase.value] = phases.get(unit.phase.value, 0) + 1
        return {
            "status": scheduler.status,
            "passes": scheduler.passes,
            "config": scheduler.config.model_dump(),
            "tracked_units": len(units),
            "queued": len(scheduler.queue),
            "phases": phases,
            "waves": scheduler.waves(),
        }

    @app.post("/reconciler/trigger")
    def trigger_reconciliation():
        """Force a reconciliation pass."""
        results = scheduler.reconcile_once()
        return ReconcilerTriggerResponse(results=results, pass_count=scheduler.passes)

    @app.get("/drift/events")
    def drift_events(limit: int = 20):
        return [e.to_dict() for e in drift.recent_events(limit=limit)]

    # === SOURCE ===

    @app.post("/source/ingest")
    def ingest_source(req: IngestRequest):
        """Push notification: a new commit of the source."""
        documents = list(req.documents)
        if req.manifests:
            documents.extend(load_documents(req.manifests, origin="push"))
        revision = ingestor.ingest(documents, commit=req.commit)
        return revision.model_dump(mode="json", exclude={"documents"})

    @app.post("/source/poll")
    def poll_source():
        """Poll the configured directory now."""
        if poller is None:
            raise ConfigError("No source path configured")
        revision = poller.poll_once()
        if revision is None:
            return {"changed": False, "digest": poller.last_digest}
        return {"changed": True, "revision": revision.model_dump(mode="json", exclude={"documents"})}

    # === REVISIONS ===

    @app.get("/revisions")
    def list_revisions(limit: int = 50):
        revisions = log.query_recent(limit=limit)
        return [r.model_dump(mode="json", exclude={"documents"}) for r in revisions]

    @app.get("/revisions/verify")
    def verify_revisions():
        """Verify chain integrity."""
        return {
            "integrity_valid": log.verify_chain_integrity(),
            "total_records": log.count(),
        }

    @app.post("/revisions/{revision_id}/rollback")
    def rollback_revision(revision_id: int):
        revision = ingestor.rollback(revision_id)
        return revision.model_dump(mode="json", exclude={"documents"})

    return app
