"""
FastAPI routes for the production pipeline.

Project Endpoints:
  GET  /project                        — Project snapshot + stage statuses
  GET  /project/styles                 — Design style catalog
  POST /project/discover               — Stage 0: search trends
  POST /project/select-trend           — Stage 0: commit a trend
  POST /project/design                 — Stage 1: generate + commit design
  POST /project/listing/draft          — Stage 2: generate listing draft
  POST /project/listing/refine-title   — Stage 2: quick title rewrite
  POST /project/listing/complete       — Stage 2: commit listing
  POST /project/mockups                — Stage 3: start mockup batch (background)
  GET  /project/mockups/progress       — Stage 3: batch progress
  POST /project/mockups/complete       — Stage 3: commit mockups
  POST /project/video                  — Stage 4: start Veo job (background)
  GET  /project/video/status           — Stage 4: poll status
  GET  /project/video/file             — Stage 4: download the committed video
  POST /project/publish                — Stage 5: publish
  POST /project/restart                — Discard project, cancel running work

Settings Endpoints:
  GET    /settings/api-key             — Is a key configured?
  PUT    /settings/api-key             — Save a key
  DELETE /settings/api-key             — Clear the saved key
"""

import logging
from typing import Awaitable, Callable

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response

from ..credentials import KeyFileCredentials
from ..errors import ErrorKind, PrintPulseError
from .catalog import list_styles
from .models import (
    ApiKeyRequest,
    BatchProgress,
    DesignRequest,
    DesignStyle,
    DiscoverRequest,
    GeneratedImage,
    ListingCompleteRequest,
    ListingData,
    Project,
    ProjectStateResponse,
    PublishReceipt,
    SelectTrendRequest,
    Stage,
    Trend,
    VideoProgress,
    VideoRequest,
)
from .orchestrator import ProductionService

logger = logging.getLogger(__name__)

HTTP_STATUS_BY_KIND = {
    ErrorKind.AUTH_MISSING: 401,
    ErrorKind.QUOTA_OR_BILLING: 402,
    ErrorKind.MALFORMED_RESPONSE: 502,
    ErrorKind.NO_ARTIFACT_PRODUCED: 502,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.STAGE_ORDER: 409,
    ErrorKind.STAGE_PRECONDITION: 409,
    ErrorKind.STAGE_BUSY: 409,
    ErrorKind.STAGE_CANCELLED: 409,
    ErrorKind.PUBLISH_FAILED: 502,
}


def get_service(request: Request) -> ProductionService:
    return request.app.state.service


def get_key_file(request: Request) -> KeyFileCredentials:
    return request.app.state.key_file


def _http_error(e: PrintPulseError) -> HTTPException:
    status = HTTP_STATUS_BY_KIND.get(e.kind, 500)
    return HTTPException(
        status_code=status,
        detail={
            "error": e.kind.value if e.kind else type(e).__name__,
            "message": e.message,
            "details": e.details,
        },
    )


async def _run_in_background(label: str, run: Callable[[], Awaitable[object]]):
    """Stage failures are already recorded on the service; just log the outcome."""
    try:
        await run()
    except PrintPulseError as e:
        logger.warning(f"Background {label} run ended with {e.kind.value if e.kind else 'error'}: {e.message}")


# ═════════════════════════════════════════════════════════════════════════════
# Project Router
# ═════════════════════════════════════════════════════════════════════════════

project_router = APIRouter(prefix="/project", tags=["project"])


@project_router.get("", response_model=ProjectStateResponse)
async def get_project(service: ProductionService = Depends(get_service)):
    return service.get_state()


@project_router.get("/styles", response_model=list[DesignStyle])
async def get_styles():
    return list_styles()


# ── Stage 0: Discover ───────────────────────────────────────────────────────

@project_router.post("/discover", response_model=list[Trend])
async def discover(request: DiscoverRequest, service: ProductionService = Depends(get_service)):
    """
    Search for trending themes. An unparseable backend answer yields [].

    Errors:
      - 404: Unknown style_id
      - 401 / 402 / 502 / 504: Generation failure
    """
    try:
        return await service.discover(request.query, request.style_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PrintPulseError as e:
        raise _http_error(e)


@project_router.post("/select-trend", response_model=Project)
async def select_trend(request: SelectTrendRequest, service: ProductionService = Depends(get_service)):
    try:
        return service.select_trend(trend=request.trend, index=request.index)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PrintPulseError as e:
        raise _http_error(e)


# ── Stage 1: Design ─────────────────────────────────────────────────────────

@project_router.post("/design", response_model=GeneratedImage)
async def generate_design(request: DesignRequest, service: ProductionService = Depends(get_service)):
    try:
        return await service.generate_design(
            aspect_ratio=request.aspect_ratio,
            resolution=request.resolution,
            reference_image=request.reference_image,
        )
    except PrintPulseError as e:
        raise _http_error(e)


# ── Stage 2: Listing ────────────────────────────────────────────────────────

@project_router.post("/listing/draft", response_model=ListingData)
async def draft_listing(service: ProductionService = Depends(get_service)):
    try:
        return await service.draft_listing()
    except PrintPulseError as e:
        raise _http_error(e)


@project_router.post("/listing/refine-title", response_model=ListingData)
async def refine_listing_title(service: ProductionService = Depends(get_service)):
    try:
        return await service.refine_listing_title()
    except PrintPulseError as e:
        raise _http_error(e)


@project_router.post("/listing/complete", response_model=Project)
async def complete_listing(request: ListingCompleteRequest, service: ProductionService = Depends(get_service)):
    """Commit the listing. Send `listing` to commit an edited version instead of the draft."""
    try:
        return service.complete_listing(request.listing)
    except PrintPulseError as e:
        raise _http_error(e)


# ── Stage 3: Mockups ────────────────────────────────────────────────────────

@project_router.post("/mockups", status_code=202)
async def start_mockups(background_tasks: BackgroundTasks, service: ProductionService = Depends(get_service)):
    """Start the mockup batch. Poll GET /project/mockups/progress for results."""
    try:
        service.reserve(Stage.MOCKUPS)
    except PrintPulseError as e:
        raise _http_error(e)

    background_tasks.add_task(_run_in_background, "mockups", service.generate_mockups)
    return {"status": "started", "total": len(service.mockups.catalog)}


@project_router.get("/mockups/progress", response_model=BatchProgress)
async def get_mockup_progress(service: ProductionService = Depends(get_service)):
    progress = service.mockup_progress
    if progress is None:
        raise HTTPException(status_code=404, detail="No mockup batch has been started")
    return progress


@project_router.post("/mockups/complete", response_model=Project)
async def complete_mockups(service: ProductionService = Depends(get_service)):
    try:
        return service.complete_mockups()
    except PrintPulseError as e:
        raise _http_error(e)


# ── Stage 4: Video ──────────────────────────────────────────────────────────

@project_router.post("/video", status_code=202)
async def start_video(
    request: VideoRequest,
    background_tasks: BackgroundTasks,
    service: ProductionService = Depends(get_service),
):
    """Start the Veo job. Poll GET /project/video/status until SUCCEEDED or FAILED."""
    try:
        service.reserve(Stage.VIDEO)
    except PrintPulseError as e:
        raise _http_error(e)

    async def run():
        return await service.generate_video(request.prompt)

    background_tasks.add_task(_run_in_background, "video", run)
    return {"status": "started"}


@project_router.get("/video/status", response_model=VideoProgress)
async def get_video_status(service: ProductionService = Depends(get_service)):
    progress = service.video_progress
    if progress is None:
        raise HTTPException(status_code=404, detail="No video job has been started")
    return progress


@project_router.get("/video/file")
async def download_video(service: ProductionService = Depends(get_service)):
    """
    Proxy the committed video. The stored locator carries no credentials;
    the API key is attached to the upstream request only.
    """
    try:
        content, media_type = await service.download_video()
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PrintPulseError as e:
        raise _http_error(e)
    return Response(content=content, media_type=media_type)


# ── Stage 5: Publish ────────────────────────────────────────────────────────

@project_router.post("/publish", response_model=PublishReceipt)
async def publish(service: ProductionService = Depends(get_service)):
    try:
        return await service.publish()
    except PrintPulseError as e:
        raise _http_error(e)


@project_router.post("/restart", response_model=Project)
async def restart(service: ProductionService = Depends(get_service)):
    return service.restart()


# ═════════════════════════════════════════════════════════════════════════════
# Settings Router — manually entered API key
# ═════════════════════════════════════════════════════════════════════════════

settings_router = APIRouter(prefix="/settings", tags=["settings"])


@settings_router.get("/api-key")
async def get_api_key_status(
    service: ProductionService = Depends(get_service),
    key_file: KeyFileCredentials = Depends(get_key_file),
):
    return {
        "saved_key": key_file.resolve() is not None,
        "configured": service.client.has_credential(),
    }


@settings_router.put("/api-key")
async def save_api_key(request: ApiKeyRequest, key_file: KeyFileCredentials = Depends(get_key_file)):
    try:
        key_file.save(request.api_key)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"status": "saved"}


@settings_router.delete("/api-key")
async def clear_api_key(key_file: KeyFileCredentials = Depends(get_key_file)):
    key_file.clear()
    return {"status": "cleared"}
