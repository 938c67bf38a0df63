"""
ProductionService — pipeline orchestrator for one project.

Runs each stage's work through the Gemini client and commits the result
through the ProjectService:
  Stage 0: Discover  (trend search → pick one)
  Stage 1: Design    (Gemini 3 Pro Image)
  Stage 2: Listing   (Gemini 3 Pro JSON draft → edit → complete)
  Stage 3: Mockups   (sequential batch over the variant catalog)
  Stage 4: Video     (Veo 3.1 long-running job)
  Stage 5: Publish   (Supabase or dry run)

Only one stage runs at a time. A restart cancels the run in flight and
bumps the epoch; results started under an old epoch are discarded.
"""

import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Sequence

from .. import config, metrics
from ..errors import StageBusyError, StageCancelledError, StagePreconditionError
from .cancellation import CancellationToken
from .catalog import MOCKUP_VARIANTS, get_style
from .mockups import MockupBatchGenerator
from .models import (
    AspectRatio,
    BatchProgress,
    GeneratedImage,
    ImageResolution,
    ListingData,
    MockupVariant,
    Project,
    ProjectStateResponse,
    PublishPayload,
    PublishReceipt,
    Stage,
    StageRunStatus,
    StageStatus,
    Trend,
    VideoProgress,
)
from .project_service import ProjectService
from .publish import DryRunPublisher, Publisher
from .video import VideoJobPoller, build_video_prompt

if TYPE_CHECKING:
    from ..gemini import GeminiClient

logger = logging.getLogger(__name__)

StageWork = Callable[[str, CancellationToken], Awaitable[Any]]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProductionService:
    """
    Usage:
        service = ProductionService(GeminiClient(default_resolver()))

        trends = await service.discover("cat lovers christmas", style_id="minimalist")
        service.select_trend(index=0)
        await service.generate_design()
        await service.draft_listing()
        service.complete_listing()
        await service.generate_mockups()
        service.complete_mockups()
        await service.generate_video()
        await service.publish()
    """

    def __init__(
        self,
        client: "GeminiClient",
        publisher: Optional[Publisher] = None,
        projects: Optional[ProjectService] = None,
        mockup_catalog: Sequence[MockupVariant] = MOCKUP_VARIANTS,
        poll_interval: float = config.VIDEO_POLL_INTERVAL,
        max_polls: int = config.VIDEO_MAX_POLLS,
    ):
        self.client = client
        self.publisher = publisher or DryRunPublisher()
        self.projects = projects or ProjectService()
        self.mockups = MockupBatchGenerator(client, mockup_catalog)
        self.poller = VideoJobPoller(client, poll_interval=poll_interval, max_polls=max_polls)

        self._statuses: dict[Stage, StageStatus] = {}
        self._active_run: Optional[Stage] = None
        self._cancel_token: Optional[CancellationToken] = None
        self._reserved_token: Optional[CancellationToken] = None
        self._reset_stage_state()

    def _reset_stage_state(self):
        self._statuses = {stage: StageStatus(stage=stage) for stage in Stage}
        self._trend_candidates: list[Trend] = []
        self._listing_draft: Optional[ListingData] = None
        self._mockup_progress: Optional[BatchProgress] = None
        self._video_progress: Optional[VideoProgress] = None
        self._receipt: Optional[PublishReceipt] = None

    # ── Status tracking ──────────────────────────────────────────────────

    def get_state(self) -> ProjectStateResponse:
        return ProjectStateResponse(
            project=self.projects.snapshot(),
            stages=[status.model_copy() for status in self._statuses.values()],
            trend_candidates=list(self._trend_candidates),
            listing_draft=self._listing_draft,
            mockup_progress=self._mockup_progress,
            video_progress=self._video_progress,
        )

    @property
    def active_run(self) -> Optional[Stage]:
        return self._active_run

    @property
    def mockup_progress(self) -> Optional[BatchProgress]:
        return self._mockup_progress

    @property
    def video_progress(self) -> Optional[VideoProgress]:
        return self._video_progress

    def _update_status(
        self,
        stage: Stage,
        status: StageRunStatus,
        epoch: str,
        error: Optional[Exception] = None,
    ):
        if not self.projects.is_current(epoch):
            return
        kind = getattr(error, "kind", None)
        self._statuses[stage] = StageStatus(
            stage=stage,
            status=status,
            error=getattr(error, "message", None) or (str(error) if error else None),
            error_kind=kind.value if kind else None,
            updated_at=_now_iso(),
        )
        logger.info(f"[{epoch}] {stage.label}: {status.value}")

    # ── Run bookkeeping ──────────────────────────────────────────────────

    def ensure_can_start(self, stage: Stage):
        """Raise StageBusyError if another run is in flight, or a stage error if `stage` is not current."""
        if self._active_run is not None:
            raise StageBusyError(self._active_run.label, stage.label)
        self.projects.require_stage(stage)

    def reserve(self, stage: Stage) -> CancellationToken:
        """
        Claim the busy slot for `stage` now, for a run that starts later
        (a background task). The next run of `stage` takes the reservation
        over; a restart drops it.
        """
        self.ensure_can_start(stage)
        token = CancellationToken()
        self._active_run = stage
        self._cancel_token = token
        self._reserved_token = token
        logger.info(f"[{self.projects.epoch}] {stage.label} reserved")
        return token

    def _claim_reservation(self, stage: Stage) -> Optional[CancellationToken]:
        token = self._reserved_token
        if token is None or token is not self._cancel_token or self._active_run != stage:
            return None
        self._reserved_token = None
        return token

    async def _execute(self, stage: Stage, work: StageWork) -> Any:
        token = self._claim_reservation(stage)
        if token is None:
            self.ensure_can_start(stage)
            token = CancellationToken()
            self._active_run = stage
            self._cancel_token = token
        epoch = self.projects.epoch
        self._update_status(stage, StageRunStatus.RUNNING, epoch)
        name = stage.name.lower()
        started = time.monotonic()

        try:
            result = await work(epoch, token)
        except StageCancelledError as e:
            logger.info(f"[{epoch}] {stage.label} cancelled: {e.message}")
            self._update_status(stage, StageRunStatus.CANCELLED, epoch, e)
            metrics.inc_counter(f"stage.{name}.cancelled")
            raise
        except Exception as e:
            logger.error(f"[{epoch}] {stage.label} failed: {e}", exc_info=True)
            self._update_status(stage, StageRunStatus.FAILED, epoch, e)
            kind = getattr(e, "kind", None)
            metrics.inc_counter(f"stage.{name}.failed")
            metrics.record_error(name, kind.value if kind else type(e).__name__, str(e), epoch)
            raise
        finally:
            metrics.record_stage_duration(name, time.monotonic() - started)
            if self._cancel_token is token:
                self._active_run = None
                self._cancel_token = None

        self._update_status(stage, StageRunStatus.SUCCEEDED, epoch)
        metrics.inc_counter(f"stage.{name}.succeeded")
        return result

    def _commit(self, stage: Stage, output: Any, epoch: str):
        if not self.projects.complete_stage(stage, output, epoch):
            raise StageCancelledError(f"Project was restarted while {stage.label} was in progress")

    def _ensure_current(self, stage: Stage, epoch: str):
        if not self.projects.is_current(epoch):
            raise StageCancelledError(f"Project was restarted while {stage.label} was in progress")

    # ── Stage 0: Discover ────────────────────────────────────────────────

    async def discover(self, query: str, style_id: Optional[str] = None) -> list[Trend]:
        style = get_style(style_id) if style_id else None

        async def work(epoch: str, token: CancellationToken) -> list[Trend]:
            trends = await self.client.discover_trends(query, style)
            self._ensure_current(Stage.DISCOVER, epoch)
            self._trend_candidates = trends
            return trends

        return await self._execute(Stage.DISCOVER, work)

    def select_trend(self, trend: Optional[Trend] = None, index: Optional[int] = None) -> Project:
        """Commit the chosen trend (explicit, or by index into the last discovery)."""
        self.ensure_can_start(Stage.DISCOVER)
        if trend is None:
            if index is None:
                raise StagePreconditionError(Stage.DESIGN.label, ["selected_trend"])
            if not 0 <= index < len(self._trend_candidates):
                raise ValueError(f"No trend at index {index} ({len(self._trend_candidates)} discovered)")
            trend = self._trend_candidates[index]

        epoch = self.projects.epoch
        self._commit(Stage.DISCOVER, trend, epoch)
        self._update_status(Stage.DISCOVER, StageRunStatus.SUCCEEDED, epoch)
        return self.projects.snapshot()

    # ── Stage 1: Design ──────────────────────────────────────────────────

    async def generate_design(
        self,
        aspect_ratio: AspectRatio = AspectRatio.SQUARE,
        resolution: ImageResolution = ImageResolution.RES_1K,
        reference_image: Optional[str] = None,
    ) -> GeneratedImage:
        async def work(epoch: str, token: CancellationToken) -> GeneratedImage:
            trend = self.projects.snapshot().selected_trend
            payload = await self.client.synthesize_design_image(
                trend, aspect_ratio, resolution, reference_image
            )
            design = GeneratedImage.from_payload(payload, trend.title)
            self._commit(Stage.DESIGN, design, epoch)
            return design

        return await self._execute(Stage.DESIGN, work)

    # ── Stage 2: Listing ─────────────────────────────────────────────────

    async def draft_listing(self) -> ListingData:
        async def work(epoch: str, token: CancellationToken) -> ListingData:
            project = self.projects.snapshot()
            listing = await self.client.synthesize_listing_text(
                project.selected_trend.title, project.design_asset.label
            )
            self._ensure_current(Stage.LISTING, epoch)
            self._listing_draft = listing
            return listing

        return await self._execute(Stage.LISTING, work)

    async def refine_listing_title(self) -> ListingData:
        async def work(epoch: str, token: CancellationToken) -> ListingData:
            draft = self._listing_draft
            if draft is None:
                raise StagePreconditionError(Stage.LISTING.label, ["listing_draft"])
            title = await self.client.refine_title(draft.title)
            self._ensure_current(Stage.LISTING, epoch)
            self._listing_draft = draft.model_copy(update={"title": title})
            return self._listing_draft

        return await self._execute(Stage.LISTING, work)

    def complete_listing(self, listing: Optional[ListingData] = None) -> Project:
        """Commit the listing: the caller's edited version, else the current draft."""
        self.ensure_can_start(Stage.LISTING)
        listing = listing or self._listing_draft
        if listing is None:
            raise StagePreconditionError(Stage.MOCKUPS.label, ["listing_metadata"])

        epoch = self.projects.epoch
        self._commit(Stage.LISTING, listing, epoch)
        self._listing_draft = listing
        self._update_status(Stage.LISTING, StageRunStatus.SUCCEEDED, epoch)
        return self.projects.snapshot()

    # ── Stage 3: Mockups ─────────────────────────────────────────────────

    async def generate_mockups(self) -> BatchProgress:
        """Run the whole mockup batch. A rerun starts from an empty sequence."""

        async def work(epoch: str, token: CancellationToken) -> BatchProgress:
            design = self.projects.snapshot().design_asset
            if not self.projects.begin_mockup_run(epoch, len(self.mockups.catalog)):
                raise StageCancelledError("Project was restarted before the mockup batch started")
            self._mockup_progress = BatchProgress(total=len(self.mockups.catalog))

            def on_result(image: GeneratedImage) -> bool:
                return self.projects.append_mockup(image, epoch)

            def on_progress(progress: BatchProgress):
                if self.projects.is_current(epoch):
                    self._mockup_progress = progress
                    metrics.set_gauge("mockups.attempted", progress.attempted)

            progress = await self.mockups.run(design, on_result, on_progress, token)
            if progress.cancelled:
                raise StageCancelledError(
                    "Project was restarted during the mockup batch",
                    {"attempted": progress.attempted, "total": progress.total},
                )
            self._ensure_current(Stage.MOCKUPS, epoch)
            self._mockup_progress = progress
            return progress

        return await self._execute(Stage.MOCKUPS, work)

    def complete_mockups(self) -> Project:
        """Advance past Mockups once a batch has finished, however many succeeded."""
        self.ensure_can_start(Stage.MOCKUPS)
        if self._mockup_progress is None or not self._mockup_progress.done:
            raise StagePreconditionError(Stage.VIDEO.label, ["finished mockup batch"])

        epoch = self.projects.epoch
        self._commit(Stage.MOCKUPS, None, epoch)
        return self.projects.snapshot()

    # ── Stage 4: Video ───────────────────────────────────────────────────

    async def generate_video(self, prompt: Optional[str] = None) -> str:
        async def work(epoch: str, token: CancellationToken) -> str:
            video_prompt = prompt or build_video_prompt(self.projects.snapshot().selected_trend)
            self._video_progress = VideoProgress()

            def on_status(progress: VideoProgress):
                if self.projects.is_current(epoch):
                    self._video_progress = progress
                    metrics.set_gauge("video.polls", progress.polls)

            video_url = await self.poller.run(video_prompt, token, on_status)
            self._commit(Stage.VIDEO, video_url, epoch)
            return video_url

        return await self._execute(Stage.VIDEO, work)

    async def download_video(self) -> tuple[bytes, str]:
        """Bytes and content type of the committed video, fetched with the current key."""
        uri = self.projects.snapshot().video_asset
        if not uri:
            raise ValueError("No video has been generated for this project")
        return await self.client.download_video(uri)

    # ── Stage 5: Publish ─────────────────────────────────────────────────

    async def publish(self) -> PublishReceipt:
        """Publish once; a project that is already published returns its receipt."""
        if self.projects.snapshot().published and self._receipt is not None:
            logger.info(f"[{self.projects.epoch}] Already published; skipping publish call")
            return self._receipt

        async def work(epoch: str, token: CancellationToken) -> PublishReceipt:
            project = self.projects.snapshot()
            payload = PublishPayload(
                project_id=project.epoch,
                listing=project.listing_metadata,
                design=project.design_asset,
                mockups=project.mockup_assets,
                video_url=project.video_asset,
            )
            receipt = await self.publisher.publish(payload)
            if not self.projects.mark_published(epoch):
                raise StageCancelledError("Project was restarted while publishing")
            self._receipt = receipt
            return receipt

        return await self._execute(Stage.PUBLISH, work)

    # ── Restart ──────────────────────────────────────────────────────────

    def restart(self) -> Project:
        """Discard everything, cancel any run in flight, and start a new epoch."""
        if self._cancel_token is not None and self._active_run is not None:
            logger.info(f"Cancelling in-flight {self._active_run.label} run")
            self._cancel_token.cancel()
        self._active_run = None
        self._cancel_token = None
        self._reserved_token = None

        project = self.projects.restart()
        self._reset_stage_state()
        metrics.inc_counter("project.restarts")
        return project
