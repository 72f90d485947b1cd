"""HTTP API for the discovery phases, bulk scraping and the automated run.

Every response body carries ``success``. Failures use a non-2xx status with
``success: false`` plus ``error`` (and ``details`` for unexpected errors).
"""

import logging
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from backend.app.lifecycle import (
    check_db_health,
    get_db_manager,
    get_pipeline,
    is_ready,
    lifespan,
)
from src import config as app_config
from src.cli.context import setup_logging
from src.pipeline.phases import DiscoveryPipeline, InvalidRequest, NotFound

setup_logging(app_config.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="Organization News Pipeline API", lifespan=lifespan)

# ALLOWED_ORIGINS is comma-separated, or "*"
allowed = app_config.ALLOWED_ORIGINS
if allowed == "*":
    origins = ["*"]
else:
    origins = [o.strip() for o in allowed.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class Phase1Request(BaseModel):
    organizationId: Optional[str] = None
    newsUrl: Optional[str] = None
    manualUrls: Optional[list[str]] = None


class SelectUrlsRequest(BaseModel):
    sessionId: str
    selectedUrlIds: list[str] = []


class ScrapeRequest(BaseModel):
    sessionId: str
    selectAll: bool = False


class FinalizeRequest(BaseModel):
    sessionId: str
    selectedContentIds: Optional[list[str]] = None
    selectAll: bool = False


class BulkScrapeRequest(BaseModel):
    organizationId: Optional[str] = None
    urls: Optional[list[Any]] = None
    concurrency: int = 3
    batchDelay: int = 2000


class QueueBatchRequest(BaseModel):
    organizationId: Optional[str] = None
    urls: Optional[list[Any]] = None


class ProcessBatchesRequest(BaseModel):
    batchIds: Optional[list[str]] = None
    concurrency: int = 3
    batchDelay: int = 2000


class AutomatedPipelineRequest(BaseModel):
    organizationIds: Optional[list[str]] = None


def _error(status_code: int, message: str, details: Optional[str] = None):
    content: dict[str, Any] = {"success": False, "error": message}
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return _error(404, str(exc))


@app.exception_handler(InvalidRequest)
async def invalid_request_handler(request: Request, exc: InvalidRequest):
    return _error(400, str(exc))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error(500, "Internal server error", str(exc))


def require_pipeline(
    pipeline: Optional[DiscoveryPipeline] = Depends(get_pipeline),
) -> DiscoveryPipeline:
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline unavailable")
    return pipeline


@app.get("/health")
def health_check():
    """Liveness check."""
    return {"status": "healthy", "service": "api"}


@app.get("/ready")
def readiness_check(
    ready: bool = Depends(is_ready),
    db=Depends(get_db_manager),
):
    """Readiness check: startup finished and the database answers."""
    if not ready:
        raise HTTPException(
            status_code=503, detail="Application not ready: startup incomplete"
        )
    db_healthy, db_message = check_db_health(db)
    if not db_healthy:
        raise HTTPException(
            status_code=503, detail=f"Application not ready: {db_message}"
        )
    return {"status": "ready", "service": "api", "database": db_message}


# --- Discovery phases --------------------------------------------------------


@app.post("/api/discovery/phase1")
def start_discovery(
    payload: Phase1Request, pipeline: DiscoveryPipeline = Depends(require_pipeline)
):
    if not payload.organizationId:
        raise InvalidRequest("Organization ID is required")
    result = pipeline.start_discovery(
        payload.organizationId,
        news_url=payload.newsUrl,
        manual_urls=payload.manualUrls,
    )
    if not result["success"]:
        return JSONResponse(status_code=502, content=result)
    return result


@app.get("/api/discovery/phase1")
def get_discovery_sessions(
    sessionId: Optional[str] = None,
    organizationId: Optional[str] = None,
    pipeline: DiscoveryPipeline = Depends(require_pipeline),
):
    if sessionId:
        return pipeline.get_session(sessionId)
    if organizationId:
        return pipeline.list_sessions(organizationId)
    raise InvalidRequest("Either sessionId or organizationId is required")


@app.patch("/api/discovery/phase2")
def select_urls(
    payload: SelectUrlsRequest, pipeline: DiscoveryPipeline = Depends(require_pipeline)
):
    return pipeline.select_urls(payload.sessionId, payload.selectedUrlIds)


@app.post("/api/discovery/phase2")
def scrape_session(
    payload: ScrapeRequest, pipeline: DiscoveryPipeline = Depends(require_pipeline)
):
    result = pipeline.scrape_session(payload.sessionId, select_all=payload.selectAll)
    if not result["success"]:
        return JSONResponse(status_code=502, content=result)
    return result


@app.get("/api/discovery/phase2")
def get_scraped_content(
    sessionId: Optional[str] = None,
    pipeline: DiscoveryPipeline = Depends(require_pipeline),
):
    if not sessionId:
        raise InvalidRequest("sessionId is required")
    return pipeline.get_scraped_content(sessionId)


@app.post("/api/discovery/phase3")
def finalize_session(
    payload: FinalizeRequest, pipeline: DiscoveryPipeline = Depends(require_pipeline)
):
    return pipeline.finalize_session(
        payload.sessionId,
        content_ids=payload.selectedContentIds,
        select_all=payload.selectAll,
    )


# --- Bulk scrape and automated pipeline --------------------------------------


@app.post("/api/bulk-scrape")
def bulk_scrape(
    payload: BulkScrapeRequest, pipeline: DiscoveryPipeline = Depends(require_pipeline)
):
    return pipeline.bulk_scrape(
        payload.organizationId,
        payload.urls or [],
        concurrency=payload.concurrency,
        batch_delay_ms=payload.batchDelay,
    )


@app.get("/api/bulk-scrape")
def bulk_scrape_method_not_allowed():
    return _error(405, "Method not allowed. Use POST to submit bulk scraping requests.")


@app.post("/api/batches")
def queue_batch(
    payload: QueueBatchRequest, pipeline: DiscoveryPipeline = Depends(require_pipeline)
):
    return pipeline.queue_batch(payload.organizationId, payload.urls or [])


@app.get("/api/batches")
def get_batches(
    batchId: Optional[str] = None,
    organizationId: Optional[str] = None,
    pipeline: DiscoveryPipeline = Depends(require_pipeline),
):
    if batchId:
        return pipeline.get_batch(batchId)
    return pipeline.list_batches(organizationId)


@app.post("/api/batches/process")
def process_batches(
    payload: Optional[ProcessBatchesRequest] = None,
    pipeline: DiscoveryPipeline = Depends(require_pipeline),
):
    payload = payload or ProcessBatchesRequest()
    return pipeline.resume_batches(
        payload.batchIds,
        concurrency=payload.concurrency,
        batch_delay_ms=payload.batchDelay,
    )


@app.post("/api/automated-pipeline")
def automated_pipeline(
    payload: Optional[AutomatedPipelineRequest] = None,
    pipeline: DiscoveryPipeline = Depends(require_pipeline),
):
    organization_ids = payload.organizationIds if payload else None
    return pipeline.run_automated(organization_ids)
