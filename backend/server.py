"""
FastAPI Server for the Course Catalog Ingestion Backend

Provides REST endpoints to trigger and monitor catalog crawls.
Runs the scheduler in the background for weekly updates.

Usage:
    python server.py                    # Run server on port 8000
    python server.py --port 3001        # Custom port
    python server.py --no-scheduler     # Disable background updates
"""

import asyncio
import argparse
from contextlib import asynccontextmanager
from typing import Any, List, Optional, Set

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from core.config import CrawlConfig, initialize_firebase, get_firestore_client
from core.logging import get_logger, setup_logging
from crawler.client import BrowserLaunchError
from services.firebase import FirebaseCourseService, PersistenceError, get_course_service
from services.ingestion import IngestionJob, IngestionOrchestrator, JobAlreadyRunningError
from tasks.scheduler import make_job

logger = get_logger(__name__)


# Pydantic Models (API Schemas)

class ApiResponse(BaseModel):
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None


class ScrapeRequest(BaseModel):
    subjects: Optional[List[str]] = None


class HealthResponse(BaseModel):
    status: str
    university: str
    firebase: str
    scraper: str


# Background Scheduler

scheduler_task = None
_background_runs: Set[asyncio.Task] = set()


async def run_background_scheduler(job: IngestionJob, config: CrawlConfig):
    """Run the scheduler in the background, sharing the server's job"""
    from tasks.scheduler import TaskScheduler

    scheduler = TaskScheduler(job=job, config=config)
    await scheduler.start()

    # Keep running
    try:
        while True:
            await asyncio.sleep(60)
    except asyncio.CancelledError:
        scheduler.shutdown()


# App Lifespan (startup/shutdown)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown"""
    global scheduler_task

    setup_logging()
    logger.info("Initializing Firebase...")
    initialize_firebase()

    if app.state.enable_scheduler:
        logger.info("Starting background scheduler...")
        scheduler_task = asyncio.create_task(run_background_scheduler(app.state.job, app.state.config))

    logger.info("Ready!")

    yield

    if scheduler_task:
        logger.info("Stopping scheduler...")
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            pass

    logger.info("Shutdown complete")


# FastAPI App

app = FastAPI(
    title="Course Catalog Ingestion API",
    description="Trigger and monitor course catalog crawls",
    version="1.0.0",
    lifespan=lifespan
)

# CORS - Allow frontend origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.enable_scheduler = True
app.state.config = CrawlConfig.from_env()
app.state.job = make_job(app.state.config)


# Dependencies

def get_config() -> CrawlConfig:
    return app.state.config


def get_job() -> IngestionJob:
    return app.state.job


def get_service() -> FirebaseCourseService:
    return get_course_service()


# API Endpoints

@app.get("/api/health", response_model=HealthResponse)
async def api_health(config: CrawlConfig = Depends(get_config), job: IngestionJob = Depends(get_job)):
    """Health check endpoint"""
    firebase_status = "connected"
    try:
        db = get_firestore_client()
        db.collection("metadata").document("health_check").get()
    except Exception as e:
        firebase_status = f"error: {str(e)[:50]}"

    return HealthResponse(
        status="ok" if firebase_status == "connected" else "degraded",
        university=config.profile.name,
        firebase=firebase_status,
        scraper=job.state.value,
    )


@app.get("/api/scraper/status", response_model=ApiResponse)
async def scraper_status(job: IngestionJob = Depends(get_job)):
    """Current state of the scraper and the result of the last run"""
    return ApiResponse(success=True, data=job.status())


async def _run_in_background(job: IngestionJob, subjects: Optional[List[str]]):
    try:
        await job.run(subjects, claimed=True)
    except Exception as e:
        # IngestionJob has already recorded the failure
        logger.error(f"Background scrape failed: {e}")


@app.post("/api/scraper/scrape", response_model=ApiResponse)
async def start_scrape(request: Optional[ScrapeRequest] = None, job: IngestionJob = Depends(get_job)):
    """
    Start a scrape in the background.

    Body: {"subjects": ["CIS", "MATH"]} or empty for all subjects.
    Returns 409 while another scrape is running.
    """
    subjects = [s.strip().upper() for s in (request.subjects or [])] if request else []
    subjects = [s for s in subjects if s] or None

    try:
        job.begin()
    except JobAlreadyRunningError:
        return JSONResponse(
            status_code=409,
            content=ApiResponse(
                success=False,
                error="A scrape is already in progress. Please wait for it to complete."
            ).model_dump()
        )

    task = asyncio.create_task(_run_in_background(job, subjects))
    _background_runs.add(task)
    task.add_done_callback(_background_runs.discard)

    return ApiResponse(success=True, data={"message": "Scrape started", "subjects": subjects or "all"})


@app.get("/api/scraper/stats", response_model=ApiResponse)
async def scraper_stats(
    config: CrawlConfig = Depends(get_config),
    service: FirebaseCourseService = Depends(get_service)
):
    """Statistics about the stored courses"""
    try:
        university_id = service.get_or_create_university(config.profile)
        stats = service.get_course_stats(university_id)
    except PersistenceError as e:
        return JSONResponse(status_code=500, content=ApiResponse(success=False, error=str(e)).model_dump())
    return ApiResponse(success=True, data=stats)


@app.get("/api/scraper/subjects", response_model=ApiResponse)
async def scraper_subjects(config: CrawlConfig = Depends(get_config), job: IngestionJob = Depends(get_job)):
    """
    Subjects available on the catalog site (no course pages are scraped).

    Returns 409 while a scrape is running; one browser crawls at a time.
    """
    if job.is_running:
        return JSONResponse(
            status_code=409,
            content=ApiResponse(
                success=False,
                error="A scrape is in progress. Try again when it has finished."
            ).model_dump()
        )

    try:
        subjects = await IngestionOrchestrator(config).discover_subjects()
    except BrowserLaunchError as e:
        return JSONResponse(status_code=500, content=ApiResponse(success=False, error=str(e)).model_dump())
    return ApiResponse(success=True, data={"subjects": subjects})


# Main

def main():
    import uvicorn

    parser = argparse.ArgumentParser(description="Course Catalog Ingestion API Server")
    parser.add_argument("--port", type=int, default=8000, help="Port to run on")
    parser.add_argument("--host", type=str, default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--no-scheduler", action="store_true", help="Disable background scheduler")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")

    args = parser.parse_args()

    app.state.enable_scheduler = not args.no_scheduler

    print(f"[Server] Starting on http://{args.host}:{args.port}")
    print(f"[Server] Scheduler: {'enabled' if app.state.enable_scheduler else 'disabled'}")

    uvicorn.run(
        "server:app" if args.reload else app,
        host=args.host,
        port=args.port,
        reload=args.reload
    )


if __name__ == "__main__":
    main()
