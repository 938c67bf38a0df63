"""
Pytest Configuration and Fixtures

Shared fakes and fixtures for the pipeline tests.
"""

import asyncio
import base64
from typing import Optional

import pytest

from printpulse import metrics
from printpulse.errors import NoArtifactProducedError
from printpulse.pipeline.catalog import get_style
from printpulse.pipeline.models import (
    GeneratedImage,
    ImagePayload,
    ListingData,
    MockupVariant,
    Stage,
    Trend,
    VideoJob,
)
from printpulse.pipeline.orchestrator import ProductionService
from printpulse.pipeline.publish import DryRunPublisher

VIDEO_URI = "https://generativelanguage.googleapis.com/v1beta/files/video-1:download?alt=media"
VIDEO_BYTES = b"\x00\x00\x00\x18ftypmp42"

THREE_VARIANTS = (
    MockupVariant(color="white", scene="folded neatly on a wooden table"),
    MockupVariant(color="black", scene="hanging on a minimal rack"),
    MockupVariant(color="navy", scene="flat lay with holiday decorations"),
)


def b64(text: str) -> str:
    return base64.b64encode(text.encode()).decode()


def make_trend(title: str = "Cozy Cabin Cat", style_id: Optional[str] = "minimalist") -> Trend:
    return Trend(
        title=title,
        description="A sleepy cat in a knitted sweater by the fire",
        style=get_style(style_id) if style_id else None,
    )


def make_design() -> GeneratedImage:
    return GeneratedImage.from_payload(ImagePayload(data=b64("design")), "Cozy Cabin Cat")


def make_listing() -> ListingData:
    return ListingData(
        title="Cozy Cabin Cat Christmas Shirt",
        description="Warm up the holidays.\n\nPerfect gift for cat lovers.",
        tags=[f"tag{i}" for i in range(13)],
    )


class FakeGenerationClient:
    """
    Scripted stand-in for GeminiClient.

    - `errors` maps a method name to the exception it raises
    - `failing_mockups` holds mockup call indices that fail
    - `mockup_gate`, when set, blocks every mockup call until released
    - `pending_polls` is how many polls report not-done before success
    """

    def __init__(self):
        self.api_key: Optional[str] = "test-key"
        self.trends = [make_trend(style_id=None)]
        self.errors: dict[str, Exception] = {}
        self.failing_mockups: set[int] = set()
        self.mockup_gate: Optional[asyncio.Event] = None
        self.pending_polls = 2
        self.video_error: Optional[str] = None
        self.calls: list[str] = []
        self.mockup_calls = 0
        self.video_polls = 0
        self.downloaded: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def has_credential(self) -> bool:
        return bool(self.api_key)

    def _enter(self, name: str):
        self.calls.append(name)
        if name in self.errors:
            raise self.errors[name]

    async def discover_trends(self, query, style=None):
        self._enter("discover_trends")
        return [trend.model_copy(update={"style": style}) for trend in self.trends]

    async def synthesize_design_image(self, trend, aspect_ratio, resolution, reference_image=None):
        self._enter("synthesize_design_image")
        return ImagePayload(data=b64(f"design:{trend.title}"))

    async def synthesize_listing_text(self, trend_title, design_context=None):
        self._enter("synthesize_listing_text")
        return make_listing()

    async def refine_title(self, current_title):
        self._enter("refine_title")
        return f"Catchy {current_title}"

    async def synthesize_mockup(self, design_payload, color, scene, mime_type="image/png"):
        self._enter("synthesize_mockup")
        index = self.mockup_calls
        self.mockup_calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.mockup_gate is not None:
                await self.mockup_gate.wait()
            else:
                await asyncio.sleep(0)
            if index in self.failing_mockups:
                raise NoArtifactProducedError("No mockup generated", {"color": color})
            return ImagePayload(data=b64(f"mockup:{index}:{color}"))
        finally:
            self.in_flight -= 1

    async def synthesize_video(self, prompt):
        self._enter("synthesize_video")
        return VideoJob(name="models/veo-3.1-fast-generate-preview/operations/op-1")

    async def get_video_job(self, job):
        self._enter("get_video_job")
        self.video_polls += 1
        if self.video_polls <= self.pending_polls:
            return VideoJob(name=job.name)
        if self.video_error:
            return VideoJob(name=job.name, done=True, error=self.video_error)
        return VideoJob(name=job.name, done=True, video_uri=VIDEO_URI)

    async def download_video(self, uri):
        self._enter("download_video")
        self.downloaded.append(uri)
        return VIDEO_BYTES, "video/mp4"


@pytest.fixture(autouse=True)
def reset_metrics():
    """Metrics are module-level; start every test from zero."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def fake_client() -> FakeGenerationClient:
    return FakeGenerationClient()


@pytest.fixture
def publisher() -> DryRunPublisher:
    return DryRunPublisher()


@pytest.fixture
def service(fake_client, publisher) -> ProductionService:
    """Service over the fake client: 3 mockup variants, no wait between polls."""
    return ProductionService(
        fake_client,
        publisher=publisher,
        mockup_catalog=THREE_VARIANTS,
        poll_interval=0,
        max_polls=5,
    )


@pytest.fixture
def advance_to():
    """Drive a service forward until `stage` is current."""

    async def _advance(service: ProductionService, stage: Stage):
        if stage > Stage.DISCOVER:
            await service.discover("cat lovers christmas", "minimalist")
            service.select_trend(index=0)
        if stage > Stage.DESIGN:
            await service.generate_design()
        if stage > Stage.LISTING:
            await service.draft_listing()
            service.complete_listing()
        if stage > Stage.MOCKUPS:
            await service.generate_mockups()
            service.complete_mockups()
        if stage > Stage.VIDEO:
            await service.generate_video()
        assert service.projects.current_stage == stage

    return _advance
