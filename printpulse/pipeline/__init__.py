"""
Print-on-demand production pipeline

Six linear stages, each feeding the next:
  Discover → Design → Listing → Mockups → Video → Publish

  ProjectService     — the project record and its stage transitions
  ProductionService  — runs stage work through Gemini and commits results
"""

from .orchestrator import ProductionService
from .project_service import ProjectService
from .routes import project_router, settings_router
from .models import Project, Stage, StageRunStatus

__all__ = [
    "ProductionService",
    "ProjectService",
    "project_router",
    "settings_router",
    "Project",
    "Stage",
    "StageRunStatus",
]
