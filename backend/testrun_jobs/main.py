import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from testrun_jobs.config import Settings, settings as default_settings
from testrun_jobs.api import jobs
from testrun_jobs.models.schemas import QueueName

logger = logging.getLogger(__name__)

def create_app(runtime=None, settings: Settings = default_settings) -> FastAPI:
    """Build the job submission API around a JobRuntime.

    Run with ``uvicorn --factory testrun_jobs.main:create_app``.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        if getattr(app.state, "runtime", None) is None:
            from workers.job_worker import JobRuntime
            app.state.runtime = JobRuntime(settings)
            logger.info("Job runtime initialized")
        yield
        # Shutdown
        logger.info("Shutting down...")

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        lifespan=lifespan
    )
    app.state.runtime = runtime

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(jobs.router, prefix="/api/jobs", tags=["jobs"])

    @app.get("/")
    async def root():
        return {
            "status": "ok",
            "service": settings.api_title,
            "version": settings.api_version,
            "queues": [queue.value for queue in QueueName],
        }

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    return app
