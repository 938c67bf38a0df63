"""
Tests for the production service

Tests for printpulse/pipeline/orchestrator.py
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from printpulse import metrics
from printpulse.errors import (
    AuthMissingError,
    MalformedResponseError,
    StageBusyError,
    StageCancelledError,
    StageOrderError,
    StagePreconditionError,
)
from printpulse.pipeline.catalog import get_style
from printpulse.pipeline.models import ListingData, PublishReceipt, Stage, StageRunStatus

from conftest import VIDEO_BYTES, VIDEO_URI


def status_of(service, stage):
    return next(s for s in service.get_state().stages if s.stage == stage)


class TestEndToEnd:
    """Tests for the full six-stage run."""

    @pytest.mark.asyncio
    async def test_example_run(self, service, fake_client, publisher):
        """Test discover → design → listing → mockups (one fails) → video → publish."""
        trends = await service.discover("cat lovers christmas", "minimalist")
        assert [t.title for t in trends] == ["Cozy Cabin Cat"]
        assert trends[0].style == get_style("minimalist")

        service.select_trend(index=0)
        design = await service.generate_design()
        assert service.projects.snapshot().design_asset == design

        listing = await service.draft_listing()
        assert len(listing.tags) == 13
        service.complete_listing()

        fake_client.failing_mockups = {1}
        progress = await service.generate_mockups()
        assert progress.done
        assert service.mockup_progress.done
        assert service.mockup_progress.succeeded == 2
        assert len(service.projects.snapshot().mockup_assets) == 2
        service.complete_mockups()
        assert service.projects.current_stage == Stage.VIDEO

        fake_client.pending_polls = 1
        video_url = await service.generate_video()
        assert video_url == VIDEO_URI
        assert fake_client.video_polls == 2

        receipt = await service.publish()

        project = service.projects.snapshot()
        assert project.published
        assert project.current_stage == Stage.PUBLISH
        assert project.video_asset == VIDEO_URI
        assert receipt.project_id == project.epoch
        assert len(publisher.receipts) == 1

    @pytest.mark.asyncio
    async def test_stored_locators_carry_no_key(self, service, fake_client, advance_to):
        """Test the committed video locator has no credential and downloads on demand."""
        await advance_to(service, Stage.PUBLISH)

        assert "key=" not in service.projects.snapshot().video_asset
        content, media_type = await service.download_video()

        assert content == VIDEO_BYTES
        assert media_type == "video/mp4"
        assert fake_client.downloaded == [VIDEO_URI]

    @pytest.mark.asyncio
    async def test_download_before_video(self, service):
        """Test there is nothing to download before the video stage."""
        with pytest.raises(ValueError):
            await service.download_video()

    @pytest.mark.asyncio
    async def test_stage_metrics_reported(self, service, advance_to):
        """Test stage durations and video polls show up in the pipeline report."""
        await advance_to(service, Stage.PUBLISH)

        report = metrics.get_snapshot()["pipeline"]

        assert report["stages"]["mockups"]["succeeded"] == 1
        assert report["stages"]["mockups"]["success_rate"] == 1.0
        assert "avg_duration_s" in report["stages"]["design"]
        assert report["mockups"]["success_rate"] == 1.0
        assert report["video"]["jobs_finished"] == 1
        assert report["video"]["avg_polls"] == 3

    @pytest.mark.asyncio
    async def test_statuses_tracked(self, service, advance_to):
        """Test each completed stage reports SUCCEEDED."""
        await advance_to(service, Stage.LISTING)

        assert status_of(service, Stage.DISCOVER).status == StageRunStatus.SUCCEEDED
        assert status_of(service, Stage.DESIGN).status == StageRunStatus.SUCCEEDED
        assert status_of(service, Stage.LISTING).status == StageRunStatus.IDLE


class TestOrderingAndFailures:
    """Tests for stage order, failures, and retry."""

    @pytest.mark.asyncio
    async def test_design_before_trend(self, service, fake_client):
        """Test design cannot run at Discover and no backend call is made."""
        with pytest.raises(StageOrderError):
            await service.generate_design()

        assert fake_client.calls == []

    @pytest.mark.asyncio
    async def test_unknown_style(self, service):
        """Test discovery with an unknown style id raises ValueError."""
        with pytest.raises(ValueError):
            await service.discover("cats", "baroque")

    @pytest.mark.asyncio
    async def test_select_needs_candidate(self, service):
        """Test selecting an index that was never discovered."""
        with pytest.raises(ValueError):
            service.select_trend(index=3)
        with pytest.raises(StagePreconditionError):
            service.select_trend()

    @pytest.mark.asyncio
    async def test_failure_leaves_project_unchanged_then_retry(self, service, fake_client, advance_to):
        """Test a failed stage commits nothing, records the error, and can be retried."""
        await advance_to(service, Stage.DESIGN)
        before = service.projects.snapshot()
        fake_client.errors["synthesize_design_image"] = AuthMissingError("API key not found")

        with pytest.raises(AuthMissingError):
            await service.generate_design()

        assert service.projects.snapshot() == before
        status = status_of(service, Stage.DESIGN)
        assert status.status == StageRunStatus.FAILED
        assert status.error_kind == "AuthMissing"
        assert metrics.get_counter("stage.design.failed") == 1
        assert service.active_run is None

        del fake_client.errors["synthesize_design_image"]
        await service.generate_design()
        assert service.projects.current_stage == Stage.LISTING

    @pytest.mark.asyncio
    async def test_malformed_listing_surfaces(self, service, fake_client, advance_to):
        """Test a malformed listing fails the stage without a draft."""
        await advance_to(service, Stage.LISTING)
        fake_client.errors["synthesize_listing_text"] = MalformedResponseError("bad JSON")

        with pytest.raises(MalformedResponseError):
            await service.draft_listing()

        assert service.get_state().listing_draft is None

    @pytest.mark.asyncio
    async def test_listing_edit_and_refine(self, service, advance_to):
        """Test the title rewrite and an edited listing both flow into the project."""
        await advance_to(service, Stage.LISTING)
        await service.draft_listing()

        refined = await service.refine_listing_title()
        assert refined.title.startswith("Catchy ")

        edited = ListingData(title="My Title", description="Mine.", tags=["a"])
        project = service.complete_listing(edited)
        assert project.listing_metadata == edited

    @pytest.mark.asyncio
    async def test_complete_listing_without_draft(self, service, advance_to):
        """Test completing the listing with nothing to commit."""
        await advance_to(service, Stage.LISTING)

        with pytest.raises(StagePreconditionError):
            service.complete_listing()

    @pytest.mark.asyncio
    async def test_mockups_need_finished_batch(self, service, advance_to):
        """Test Mockups cannot be completed before a batch has finished."""
        await advance_to(service, Stage.MOCKUPS)

        with pytest.raises(StagePreconditionError):
            service.complete_mockups()

    @pytest.mark.asyncio
    async def test_mockup_retry_clears_partial(self, service, fake_client, advance_to):
        """Test rerunning the batch replaces the earlier results."""
        await advance_to(service, Stage.MOCKUPS)
        fake_client.failing_mockups = {0, 1}
        await service.generate_mockups()
        assert len(service.projects.snapshot().mockup_assets) == 1

        fake_client.failing_mockups = set()
        await service.generate_mockups()

        assert len(service.projects.snapshot().mockup_assets) == 3

    @pytest.mark.asyncio
    async def test_publish_once(self, service, advance_to):
        """Test publishing twice calls the boundary once."""
        await advance_to(service, Stage.PUBLISH)
        service.publisher = AsyncMock()
        service.publisher.publish.return_value = PublishReceipt(
            project_id=service.projects.epoch, published_at="2026-01-01T00:00:00+00:00"
        )

        first = await service.publish()
        second = await service.publish()

        assert first == second
        service.publisher.publish.assert_awaited_once()


class TestConcurrency:
    """Tests for busy detection and restart cancellation."""

    @pytest.mark.asyncio
    async def test_busy_while_batch_runs(self, service, fake_client, advance_to):
        """Test another stage action is refused while the batch is in flight."""
        await advance_to(service, Stage.MOCKUPS)
        fake_client.mockup_gate = asyncio.Event()

        task = asyncio.create_task(service.generate_mockups())
        await asyncio.sleep(0.01)

        with pytest.raises(StageBusyError):
            service.complete_mockups()
        assert service.get_state().mockup_progress.generating_index == 0

        fake_client.mockup_gate.set()
        await task
        service.complete_mockups()

    @pytest.mark.asyncio
    async def test_restart_discards_in_flight_mockup(self, service, fake_client, advance_to):
        """Test a mockup arriving after restart never lands in the new project."""
        await advance_to(service, Stage.MOCKUPS)
        fake_client.mockup_gate = asyncio.Event()

        task = asyncio.create_task(service.generate_mockups())
        await asyncio.sleep(0.01)
        fresh = service.restart()
        fake_client.mockup_gate.set()

        with pytest.raises(StageCancelledError):
            await task

        project = service.projects.snapshot()
        assert project.epoch == fresh.epoch
        assert project.mockup_assets == []
        assert project.current_stage == Stage.DISCOVER
        assert fake_client.mockup_calls == 1
        assert service.get_state().mockup_progress is None

    @pytest.mark.asyncio
    async def test_restart_does_not_block_next_run(self, service, fake_client, advance_to):
        """Test a new stage can start right after restart, while the old run unwinds."""
        await advance_to(service, Stage.MOCKUPS)
        fake_client.mockup_gate = asyncio.Event()
        task = asyncio.create_task(service.generate_mockups())
        await asyncio.sleep(0.01)

        service.restart()
        trends = await service.discover("cats")

        assert trends
        fake_client.mockup_gate.set()
        with pytest.raises(StageCancelledError):
            await task
        assert service.active_run is None

    @pytest.mark.asyncio
    async def test_restart_cancels_video_poll(self, service, fake_client, advance_to):
        """Test restart wakes the poller instead of waiting out the interval."""
        await advance_to(service, Stage.VIDEO)
        service.poller.poll_interval = 30

        task = asyncio.create_task(service.generate_video())
        await asyncio.sleep(0.01)
        service.restart()

        with pytest.raises(StageCancelledError):
            await asyncio.wait_for(task, timeout=1)
        assert service.projects.snapshot().video_asset is None

    @pytest.mark.asyncio
    async def test_reservation_blocks_second_start(self, service, advance_to):
        """Test a reserved stage is busy before its run begins, and the run takes the slot over."""
        await advance_to(service, Stage.MOCKUPS)

        service.reserve(Stage.MOCKUPS)
        assert service.active_run == Stage.MOCKUPS
        with pytest.raises(StageBusyError):
            service.reserve(Stage.MOCKUPS)
        with pytest.raises(StageBusyError):
            service.complete_mockups()

        progress = await service.generate_mockups()

        assert progress.done
        assert service.active_run is None
        service.complete_mockups()

    @pytest.mark.asyncio
    async def test_restart_drops_reservation(self, service, fake_client, advance_to):
        """Test a reservation does not survive a restart."""
        await advance_to(service, Stage.MOCKUPS)
        token = service.reserve(Stage.MOCKUPS)

        service.restart()

        assert token.cancelled
        assert service.active_run is None
        with pytest.raises(StageOrderError):
            await service.generate_mockups()
        assert fake_client.mockup_calls == 0
