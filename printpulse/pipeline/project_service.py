"""
Project state & stage transitions.

Holds the single Project record and advances it through the six stages:
  Discover → Design → Listing → Mockups → Video → Publish

Every mutation builds a new record and swaps it in under the lock, so a
snapshot never shows an advanced stage without that stage's output.
Mutations carry the epoch they were started under; a stale epoch (the
project was restarted meanwhile) is refused and nothing is written.
"""

import logging
import threading
from typing import Any, Optional

from ..errors import MockupCapacityError, StageOrderError, StagePreconditionError
from .models import GeneratedImage, Project, Stage

logger = logging.getLogger(__name__)

# Field written when a stage completes. Mockups are appended during the run.
STAGE_OUTPUT_FIELD: dict[Stage, Optional[str]] = {
    Stage.DISCOVER: "selected_trend",
    Stage.DESIGN: "design_asset",
    Stage.LISTING: "listing_metadata",
    Stage.MOCKUPS: None,
    Stage.VIDEO: "video_asset",
}

# Data that must be present to enter each stage (cumulative)
ENTRY_REQUIREMENTS: dict[Stage, tuple[str, ...]] = {
    Stage.DISCOVER: (),
    Stage.DESIGN: ("selected_trend",),
    Stage.LISTING: ("selected_trend", "design_asset"),
    Stage.MOCKUPS: ("selected_trend", "design_asset"),
    Stage.VIDEO: ("selected_trend", "design_asset"),
    Stage.PUBLISH: ("selected_trend", "design_asset", "listing_metadata"),
}


def missing_requirements(project: Project, stage: Stage) -> list[str]:
    return [name for name in ENTRY_REQUIREMENTS[stage] if getattr(project, name) is None]


class ProjectService:
    """
    Stage transition controller for one Project.

    Usage:
        projects = ProjectService()
        epoch = projects.epoch
        projects.complete_stage(Stage.DISCOVER, trend, epoch)
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._project = Project()
        self._mockup_capacity = 0

    # ── Reads ────────────────────────────────────────────────────────────

    def snapshot(self) -> Project:
        with self._lock:
            return self._project.model_copy(deep=True)

    @property
    def epoch(self) -> str:
        with self._lock:
            return self._project.epoch

    @property
    def current_stage(self) -> Stage:
        with self._lock:
            return self._project.current_stage

    def is_current(self, epoch: str) -> bool:
        with self._lock:
            return self._project.epoch == epoch

    def require_stage(self, stage: Stage):
        """Raise unless `stage` is the current stage and its entry data is present."""
        with self._lock:
            project = self._project
        if project.current_stage != stage:
            raise StageOrderError(stage.label, project.current_stage.label)
        missing = missing_requirements(project, stage)
        if missing:
            raise StagePreconditionError(stage.label, missing)

    # ── Transitions ──────────────────────────────────────────────────────

    def complete_stage(self, stage: Stage, output: Any, epoch: str) -> bool:
        """
        Write `stage`'s output and advance to the next stage in one swap.

        Returns False (project untouched) if `epoch` is stale.
        """
        with self._lock:
            project = self._project
            if project.epoch != epoch:
                logger.warning(f"[{epoch}] Discarding stale {stage.label} result")
                return False
            if stage != project.current_stage or stage == Stage.PUBLISH:
                raise StageOrderError(stage.label, project.current_stage.label)

            updates: dict[str, Any] = {"current_stage": stage.next}
            field = STAGE_OUTPUT_FIELD[stage]
            if field:
                if output is None:
                    raise StagePreconditionError(stage.next.label, [field])
                updates[field] = output

            candidate = project.model_copy(update=updates, deep=True)
            missing = missing_requirements(candidate, stage.next)
            if missing:
                raise StagePreconditionError(stage.next.label, missing)

            self._project = candidate

        logger.info(f"[{epoch}] {stage.label} complete → {stage.next.label}")
        return True

    def begin_mockup_run(self, epoch: str, capacity: int) -> bool:
        """Start a (re)run of the mockup batch: clears earlier partial results."""
        with self._lock:
            project = self._project
            if project.epoch != epoch:
                return False
            if project.current_stage != Stage.MOCKUPS:
                raise StageOrderError(Stage.MOCKUPS.label, project.current_stage.label)
            self._project = project.model_copy(update={"mockup_assets": []}, deep=True)
            self._mockup_capacity = capacity
        return True

    def append_mockup(self, image: GeneratedImage, epoch: str) -> bool:
        with self._lock:
            project = self._project
            if project.epoch != epoch:
                logger.warning(f"[{epoch}] Discarding stale mockup '{image.label}'")
                return False
            if project.current_stage != Stage.MOCKUPS:
                raise StageOrderError(Stage.MOCKUPS.label, project.current_stage.label)
            if len(project.mockup_assets) >= self._mockup_capacity:
                raise MockupCapacityError(self._mockup_capacity)
            self._project = project.model_copy(
                update={"mockup_assets": [*project.mockup_assets, image]}, deep=True
            )
        return True

    def mark_published(self, epoch: str) -> bool:
        with self._lock:
            project = self._project
            if project.epoch != epoch:
                return False
            if project.current_stage != Stage.PUBLISH:
                raise StageOrderError(Stage.PUBLISH.label, project.current_stage.label)
            missing = missing_requirements(project, Stage.PUBLISH)
            if missing:
                raise StagePreconditionError(Stage.PUBLISH.label, missing)
            self._project = project.model_copy(update={"published": True}, deep=True)

        logger.info(f"[{epoch}] Project published")
        return True

    def restart(self) -> Project:
        """Replace the project with a fresh one (new epoch). Always succeeds."""
        with self._lock:
            old_epoch = self._project.epoch
            self._project = Project()
            self._mockup_capacity = 0
            fresh = self._project.model_copy(deep=True)

        logger.info(f"[{old_epoch}] Project restarted as {fresh.epoch}")
        return fresh
