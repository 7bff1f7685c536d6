import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from reportflow.application import get_workflow_service
from reportflow.routes import jobs, progress, workflow

logging.basicConfig(
    level=os.getenv("REPORTFLOW_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    service = get_workflow_service()
    logger.info(f"Workflow orchestrator starting ({service.settings.environment})")
    yield
    await service.worker.aclose()


def create_app() -> FastAPI:
    app = FastAPI(title="Report Workflow Orchestrator API", version="0.1.0", lifespan=lifespan)

    origins_env = os.getenv("API_CORS_ORIGINS", "")
    origins = [origin.strip() for origin in origins_env.split(",") if origin.strip()]
    if not origins:
        origins = ["http://localhost:3000", "http://127.0.0.1:3000"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(workflow.router, prefix="/api")
    app.include_router(jobs.router, prefix="/api")
    app.include_router(progress.router, prefix="/api")

    @app.get("/api/health", tags=["health"])
    async def health() -> dict:
        """Liveness check that needs no user header."""
        return {"status": "ok", "environment": get_workflow_service().settings.environment}

    @app.get("/", include_in_schema=False)
    async def root() -> JSONResponse:
        """Provide a lightweight landing page for container checks."""
        return JSONResponse(
            {
                "message": "Report Workflow Orchestrator API",
                "docs": "/docs",
                "health": "/api/health",
            }
        )

    return app


app = create_app()
