"""
Promo video — Veo long-running job, driven to completion by polling.

States: STARTED → PENDING (self-loops) → SUCCEEDED | FAILED.
The wait between polls is bounded by max_polls and wakes early when the
run is cancelled by a project restart.
"""

import logging
from typing import TYPE_CHECKING, Callable, Optional

from .. import config, metrics
from ..errors import GenerationTimeoutError, NoArtifactProducedError, StageCancelledError
from .cancellation import CancellationToken
from .models import Trend, VideoJob, VideoJobStatus, VideoProgress

if TYPE_CHECKING:
    from ..gemini import GeminiClient

logger = logging.getLogger(__name__)

VIDEO_PROMPT = (
    "10 second cinematic product commercial for a {title} t-shirt. "
    "High fashion, trendy, 4k resolution, upbeat vibe."
)

StatusHandler = Callable[[VideoProgress], None]


def build_video_prompt(trend: Optional[Trend]) -> str:
    return VIDEO_PROMPT.format(title=trend.title if trend else "trendy graphic")


class VideoJobPoller:
    """
    Usage:
        poller = VideoJobPoller(client)
        video_url = await poller.run(prompt, cancel_token=token)
    """

    def __init__(
        self,
        client: "GeminiClient",
        poll_interval: float = config.VIDEO_POLL_INTERVAL,
        max_polls: int = config.VIDEO_MAX_POLLS,
    ):
        self.client = client
        self.poll_interval = poll_interval
        self.max_polls = max_polls

    async def run(
        self,
        prompt: str,
        cancel_token: Optional[CancellationToken] = None,
        on_status: Optional[StatusHandler] = None,
    ) -> str:
        """Start the job and poll until it is done. Returns the video locator."""
        token = cancel_token or CancellationToken()
        progress = VideoProgress()

        def report(status: VideoJobStatus, job: VideoJob, error: Optional[str] = None):
            progress.status = status
            progress.job_name = job.name
            progress.video_uri = job.video_uri if status == VideoJobStatus.SUCCEEDED else None
            progress.error = error
            if on_status is not None:
                on_status(progress.model_copy())

        job = await self.client.synthesize_video(prompt)
        report(VideoJobStatus.STARTED, job)

        while not job.done:
            if progress.polls >= self.max_polls:
                message = f"Veo job {job.name} timed out after {self.max_polls} polls"
                report(VideoJobStatus.FAILED, job, message)
                metrics.inc_counter("video.timeout")
                raise GenerationTimeoutError(message, {"job": job.name, "polls": progress.polls})

            if await token.wait(self.poll_interval):
                logger.info(f"Veo job {job.name} polling cancelled after {progress.polls} polls")
                raise StageCancelledError("Video generation cancelled by restart", {"job": job.name})

            job = await self.client.get_video_job(job)
            progress.polls += 1
            logger.info(f"Veo poll #{progress.polls}: done={job.done}")
            if not job.done:
                report(VideoJobStatus.PENDING, job)

        if token.cancelled:
            raise StageCancelledError("Video generation cancelled by restart", {"job": job.name})
        metrics.record_video_polls(progress.polls)

        if job.error or not job.video_uri:
            message = job.error or "Veo job completed without a video"
            report(VideoJobStatus.FAILED, job, message)
            raise NoArtifactProducedError(message, {"job": job.name, "polls": progress.polls})

        report(VideoJobStatus.SUCCEEDED, job)
        logger.info(f"Veo job {job.name} finished after {progress.polls} polls")
        return job.video_uri
