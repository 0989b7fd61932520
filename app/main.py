import logging

from fastapi import FastAPI

from app.api.router import api_router
from app.core.config import get_settings


logger = logging.getLogger(__name__)


def _configure_logging(log_level: str) -> None:
    root_logger = logging.getLogger()
    if root_logger.handlers:
        return
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_application() -> FastAPI:
    settings = get_settings()
    _configure_logging(settings.log_level)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_url=f"{settings.api_prefix}/openapi.json",
        docs_url=f"{settings.api_prefix}/docs",
        redoc_url=f"{settings.api_prefix}/redoc",
    )

    app.include_router(api_router, prefix=settings.api_prefix)
    logger.info(
        "Application configured env=%s call_records_store=%s user_data_store=%s call_events_publisher=%s",
        settings.app_env,
        settings.call_records_store,
        settings.user_data_store,
        settings.call_events_publisher,
    )
    return app


app = create_application()
