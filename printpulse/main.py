import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request

from . import config, metrics
from .auth_middleware import ApiSecretMiddleware
from .credentials import KeyFileCredentials, default_resolver
from .gemini import GeminiClient
from .pipeline import ProductionService, project_router, settings_router
from .pipeline.publish import build_publisher
from .rate_limiter import build_generation_limiter

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_service(key_file: KeyFileCredentials) -> ProductionService:
    """Wire the default service: env/key-file credentials, optional pacing, Supabase or dry-run publish."""
    client = GeminiClient(
        default_resolver(key_file),
        limiter=build_generation_limiter(),
    )
    return ProductionService(client, publisher=build_publisher())


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("PrintPulse starting up...")
    metrics.set_gauge("start_time", time.time())
    yield
    app.state.service.restart()
    logger.info("PrintPulse shutting down...")


def create_app(
    service: Optional[ProductionService] = None,
    key_file: Optional[KeyFileCredentials] = None,
    api_secret: Optional[str] = None,
) -> FastAPI:
    key_file = key_file or KeyFileCredentials()

    secret = config.API_SECRET if api_secret is None else api_secret

    app = FastAPI(title="PrintPulse", lifespan=lifespan)
    if secret:
        app.add_middleware(ApiSecretMiddleware, secret=secret)
    app.state.key_file = key_file
    app.state.service = service or build_service(key_file)

    app.include_router(project_router)
    app.include_router(settings_router)

    @app.get("/health")
    def health_check(request: Request):
        """Verify the service is running and a Gemini key is configured."""
        service = request.app.state.service
        return {
            "status": "ok",
            "gemini_api_key_set": service.client.has_credential(),
            "supabase_url_set": bool(config.SUPABASE_URL),
            "current_stage": service.projects.current_stage.label,
        }

    @app.get("/metrics")
    def metrics_endpoint():
        """Return a snapshot of all service metrics."""
        return metrics.get_snapshot()

    return app


app = create_app()


def run():
    uvicorn.run("printpulse.main:app", host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()
