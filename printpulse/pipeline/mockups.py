"""
Mockup batch — one design, one mockup per catalog variant.

Variants are generated strictly one at a time, in catalog order, to stay
under the backend's rate limit. A failed variant is recorded and the batch
moves on; successes are handed to the caller as soon as they arrive.
"""

import logging
from typing import TYPE_CHECKING, Callable, Optional, Sequence

from .. import metrics
from ..errors import GenerationError
from .cancellation import CancellationToken
from .catalog import MOCKUP_VARIANTS
from .models import BatchProgress, GeneratedImage, MockupVariant, VariantFailure

if TYPE_CHECKING:
    from ..gemini import GeminiClient

logger = logging.getLogger(__name__)

ResultHandler = Callable[[GeneratedImage], bool]
ProgressHandler = Callable[[BatchProgress], None]


class MockupBatchGenerator:
    """
    Usage:
        generator = MockupBatchGenerator(client)
        progress = await generator.run(design, on_result=keep)

    `on_result` returns False to refuse a result (the project was restarted),
    which stops the batch and reports it as cancelled.
    """

    def __init__(self, client: "GeminiClient", catalog: Sequence[MockupVariant] = MOCKUP_VARIANTS):
        self.client = client
        self.catalog = tuple(catalog)

    async def run(
        self,
        design: GeneratedImage,
        on_result: ResultHandler,
        on_progress: Optional[ProgressHandler] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> BatchProgress:
        progress = BatchProgress(total=len(self.catalog))

        for index, variant in enumerate(self.catalog):
            if cancel_token is not None and cancel_token.cancelled:
                progress.cancelled = True
                break

            progress.generating_index = index
            self._emit(on_progress, progress)
            logger.info(f"Generating mockup {index + 1}/{progress.total}: {variant.color}, {variant.scene}")

            accepted = True
            try:
                payload = await self.client.synthesize_mockup(
                    design.raw_payload, variant.color, variant.scene, mime_type=design.mime_type
                )
            except GenerationError as e:
                logger.warning(f"Mockup {index} ({variant.color}) failed: {e}")
                progress.failures.append(VariantFailure(index=index, color=variant.color, error=e.message))
                metrics.inc_counter("mockups.variant.failed")
            else:
                if cancel_token is not None and cancel_token.cancelled:
                    accepted = False
                else:
                    accepted = on_result(GeneratedImage.from_payload(payload, f"Mockup {variant.color}"))
                if accepted:
                    progress.succeeded += 1
                    metrics.inc_counter("mockups.variant.succeeded")

            progress.attempted += 1
            progress.last_index = index
            progress.generating_index = None

            if not accepted:
                logger.warning(f"Mockup {index} discarded; batch cancelled")
                progress.cancelled = True
                self._emit(on_progress, progress)
                break

            if index == len(self.catalog) - 1:
                progress.done = True
            self._emit(on_progress, progress)
        else:
            progress.done = True

        progress.generating_index = None
        logger.info(
            f"Mockup batch {'done' if progress.done else 'cancelled'}: "
            f"{progress.succeeded}/{progress.total} succeeded, {len(progress.failures)} failed"
        )
        return progress

    @staticmethod
    def _emit(on_progress: Optional[ProgressHandler], progress: BatchProgress):
        if on_progress is not None:
            on_progress(progress.model_copy(deep=True))
