from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
import uvicorn
import logging
from contextlib import asynccontextmanager

from attendance_sync.core.config import settings
from attendance_sync.core.database import init_db
from attendance_sync.api.v1 import sync

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Initialize database
    await init_db()
    logger.info(f"{settings.APP_NAME} started")

    yield


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description="Reconciles period attendance from the district SIS into local storage",
        version="1.0.0",
        lifespan=lifespan
    )

    app.include_router(sync.router, prefix="/api/v1/sync", tags=["sync"])

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "version": "1.0.0"}

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request, exc):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "status_code": exc.status_code}
        )

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "attendance_sync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="info" if not settings.DEBUG else "debug"
    )
