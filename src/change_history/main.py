from fastapi import Depends, FastAPI, Path
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .config import settings
from .errors import ErrorSeverity, StructuredError
from .indexes import IndexProvisioner
from .logging import correlation_id_middleware, logger, setup_logging
from .metrics import MAINTENANCE_RUNS
from .partitions import PartitionLifecycleManager, PartitionRouter
from .schemas import IndexReport, PartitionReport
from .storage.base import HistoryStore
from .storage.postgres import PostgresHistoryStore

setup_logging()
app = FastAPI(title="Change History", version="0.1.0")
app.middleware("http")(correlation_id_middleware)


def get_store() -> HistoryStore:
    return PostgresHistoryStore(settings)

@app.exception_handler(StructuredError)
async def structured_error_handler(request, exc: StructuredError):
    if exc.severity is ErrorSeverity.CRITICAL:
        status = 500
    elif exc.retryable:
        status = 503
    else:
        status = 400
    logger.error("Maintenance request failed: %s", exc.message)
    return JSONResponse(status_code=status, content=exc.to_dict())

@app.get("/health")
def health():
    return {"status": "ok", "service": settings.service_name, "environment": settings.environment}

@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

@app.post("/maintenance/partitions/{year}", response_model=PartitionReport)
def ensure_partitions(
    year: int = Path(..., ge=1, le=9998),
    store: HistoryStore = Depends(get_store),
):
    MAINTENANCE_RUNS.labels(operation="ensure_partitions").inc()
    manager = PartitionLifecycleManager(store, PartitionRouter.from_settings(settings))
    partitions = manager.ensure_partitions(year)
    return PartitionReport(year=year, partitions=[p.name for p in partitions])

@app.post("/maintenance/indexes", response_model=IndexReport)
def provision_indexes(store: HistoryStore = Depends(get_store)):
    MAINTENANCE_RUNS.labels(operation="provision_indexes").inc()
    created = IndexProvisioner.from_settings(store, settings).provision_indexes()
    return IndexReport(created=created, partitions=len(store.list_partitions()))

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("change_history.main:app", host="127.0.0.1", port=8000, reload=True)
