from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from chapter_tutor.api.v1.api_router import v1_router
from chapter_tutor.api.v1.errors import install_exception_handlers
from chapter_tutor.core.observability.correlation import CorrelationMiddleware
from chapter_tutor.core.observability.logger_config import configure_structlog
from chapter_tutor.core.settings import settings
from chapter_tutor.infrastructure.container import TutorContainer

configure_structlog()
logger = structlog.get_logger(__name__)
logger.info(
    "auth_runtime_mode",
    auth_mode="deployed" if settings.is_deployed_environment else "local_bypass",
    document_store=settings.DOCUMENT_STORE_BACKEND,
    app_env=settings.APP_ENV,
    environment=settings.ENVIRONMENT,
)


def build_container() -> TutorContainer:
    return TutorContainer()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # One container per process: caches and the single-flight registries live here.
    container = build_container()
    app.state.container = container
    await container.startup()
    try:
        yield
    finally:
        await container.shutdown()
        logger.info("tutor_container_stopped")


app = FastAPI(
    title="Chapter Tutor API",
    description="Chapter-scoped voice tutoring with scope filtering and cost-optimized generation.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(CorrelationMiddleware)
install_exception_handlers(app)
app.include_router(v1_router)


@app.get("/health")
def health_check():
    """
    Liveness check. Does not touch the document store or any paid backend.
    """
    return {
        "status": "ok",
        "service": "chapter-tutor",
        "api_v1": "available",
        "document_store": settings.DOCUMENT_STORE_BACKEND,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.API_PORT)
