"""
Ingestion Orchestrator

Drives one crawl of the catalog end to end:
1. Launch the browser (with an unreachable store, the only failures that
   abort a run)
2. Resolve subjects: explicit list or discovered from the catalog index
3. For every course of every subject: fetch, extract fields, parse
   prerequisites, assemble a ScrapedCourse
4. Summarize the run as a ScrapeResult

Sequential by default. With max_concurrency > 1 the courses of a subject are
processed by a bounded pool of workers, each with its own browser session,
all sharing one rate limiter.

IngestionJob wraps a run with idle/running/completed/failed state so that
triggers (CLI, HTTP, scheduler) can refuse overlapping runs.
"""

import asyncio
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from core.config import CrawlConfig
from core.logging import get_logger
from core.models import CoursePage, CourseRef, ErrorKind, ScrapedCourse, ScrapeError, ScrapeResult
from core.parsers import extract_course_fields
from crawler.client import BrowserClient, BrowserLaunchError, BrowserSession, RateLimiter
from crawler.fetcher import CoursicleFetcher, Operator
from .prerequisites import PrerequisiteEngine

logger = get_logger(__name__)


class IngestionOrchestrator:
    """Runs the crawl pipeline for one configuration."""

    def __init__(
        self,
        config: CrawlConfig,
        engine: Optional[PrerequisiteEngine] = None,
        operator: Optional[Operator] = None,
        limiter: Optional[RateLimiter] = None,
        client_factory: Callable[[CrawlConfig], BrowserClient] = BrowserClient
    ):
        self.config = config
        self.engine = engine or PrerequisiteEngine()
        self.operator = operator
        self.limiter = limiter or RateLimiter(config.delay_ms)
        self.client_factory = client_factory
        self.errors: List[ScrapeError] = []

    def build_course(self, page: CoursePage) -> ScrapedCourse:
        """Turn a fetched page into a course record"""
        ref = page.ref
        fields = extract_course_fields(page.text, page.heading, ref.subject, ref.number_str, self.config.profile)
        return ScrapedCourse(
            subject=ref.subject,
            number=ref.number,
            title=fields.title,
            credits=fields.credits,
            description=fields.description,
            prerequisites=self.engine.parse(fields.prerequisite_text),
            prerequisite_text=fields.prerequisite_text,
            attributes=fields.attributes,
            sections=fields.sections,
            number_str=ref.number_str,
        )

    async def _process_course(
        self,
        fetcher: CoursicleFetcher,
        ref: CourseRef,
        session: Optional[BrowserSession]
    ) -> Optional[ScrapedCourse]:
        page = await fetcher.fetch_course_page(ref, session)
        if page is None:
            return None

        try:
            course = self.build_course(page)
        except Exception as e:
            logger.exception(f"Failed to extract {ref.code}")
            self.errors.append(ScrapeError(
                kind=ErrorKind.PARSE,
                message=f"Extraction failed: {e}",
                subject=ref.subject,
                number=ref.number,
            ))
            return None

        logger.info(f"  {course.course_code}: {course.title} ({len(course.sections)} sections)")
        return course

    async def _run_unit(
        self,
        fetcher: CoursicleFetcher,
        ref: CourseRef,
        session: Optional[BrowserSession] = None
    ) -> Optional[ScrapedCourse]:
        """
        One course, bounded by the unit timeout unless an operator may be waiting.

        Never raises: anything the fetcher did not handle closes the unit as a
        network error so the rest of the run proceeds.
        """
        seconds = self.config.unit_timeout_seconds
        try:
            if self.config.manual_assist:
                return await self._process_course(fetcher, ref, session)
            return await asyncio.wait_for(self._process_course(fetcher, ref, session), timeout=seconds)
        except asyncio.TimeoutError:
            logger.error(f"Timed out scraping {ref.code} after {seconds:.0f}s")
            fetcher.record_timeout(ref, seconds)
            return None
        except Exception as e:
            logger.exception(f"Unexpected failure scraping {ref.code}")
            fetcher.record_unit_failure(ref, f"Unexpected failure: {e}")
            return None

    async def _process_subject(self, fetcher: CoursicleFetcher, refs: List[CourseRef]) -> List[ScrapedCourse]:
        if self.config.max_concurrency <= 1 or len(refs) <= 1:
            results = []
            for ref in refs:
                results.append(await self._run_unit(fetcher, ref))
            return [c for c in results if c is not None]

        queue: asyncio.Queue = asyncio.Queue()
        for index, ref in enumerate(refs):
            queue.put_nowait((index, ref))
        results: Dict[int, ScrapedCourse] = {}

        async def worker():
            # Without a session of its own the worker lets each unit open one
            session: Optional[BrowserSession] = None
            try:
                session = await fetcher.client.open_session()
            except Exception as e:
                logger.warning(f"Worker session unavailable, using one session per course: {e}")
            try:
                while True:
                    try:
                        index, ref = queue.get_nowait()
                    except asyncio.QueueEmpty:
                        return
                    course = await self._run_unit(fetcher, ref, session)
                    if course is not None:
                        results[index] = course
            finally:
                if session is not None:
                    await session.close()

        workers = min(self.config.max_concurrency, len(refs))
        await asyncio.gather(*(worker() for _ in range(workers)))
        return [results[i] for i in sorted(results)]

    async def discover_subjects(self) -> List[str]:
        """
        List the catalog's subjects without crawling any course.

        Raises:
            BrowserLaunchError: if the browser cannot be started
        """
        async with self.client_factory(self.config) as client:
            fetcher = CoursicleFetcher(client, self.limiter, self.config, self.operator)
            subjects = await fetcher.get_subjects()
            self.errors = list(fetcher.errors)
        return subjects

    async def run(self, subjects: Optional[List[str]] = None) -> Tuple[List[ScrapedCourse], ScrapeResult]:
        """
        Crawl the catalog.

        Args:
            subjects: Subject codes to crawl; falls back to the configured
                      subjects, then to every subject on the catalog index

        Returns:
            (courses, result). Per-course and per-subject failures are in
            result.errors; only a browser launch failure sets success=False.
        """
        started = time.monotonic()
        self.errors = []
        courses: List[ScrapedCourse] = []
        fetcher: Optional[CoursicleFetcher] = None

        try:
            async with self.client_factory(self.config) as client:
                fetcher = CoursicleFetcher(client, self.limiter, self.config, self.operator)

                requested = subjects or self.config.subjects
                if requested:
                    subject_list = list(dict.fromkeys(s.strip().upper() for s in requested if s.strip()))
                else:
                    subject_list = await fetcher.get_subjects()
                logger.info(f"Scraping {len(subject_list)} subjects")

                for i, subject in enumerate(subject_list, 1):
                    logger.info(f"[{i}/{len(subject_list)}] {subject}")
                    try:
                        refs = await fetcher.get_course_list(subject)
                        if not refs:
                            logger.warning(f"No courses found for {subject}")
                            continue
                        courses.extend(await self._process_subject(fetcher, refs))
                    except Exception as e:
                        logger.exception(f"Subject {subject} failed")
                        self.errors.append(ScrapeError(
                            kind=ErrorKind.NETWORK, message=f"Subject failed: {e}", subject=subject
                        ))
        except BrowserLaunchError as e:
            logger.error(str(e))
            return [], ScrapeResult(
                success=False,
                errors=[ScrapeError(kind=ErrorKind.NETWORK, message=str(e))],
                duration_ms=int((time.monotonic() - started) * 1000),
            )

        errors = (fetcher.errors if fetcher else []) + self.errors
        result = ScrapeResult(
            success=True,
            courses_scraped=len(courses),
            sections_scraped=sum(len(c.sections) for c in courses),
            errors=errors,
            duration_ms=int((time.monotonic() - started) * 1000),
            prerequisite_stats=dict(self.engine.stats),
        )

        fallback = self.engine.stats.get("fallback", 0)
        if fallback:
            logger.warning(f"{fallback} prerequisite strings needed fallback parsing")
        logger.info(
            f"Scrape complete: {result.courses_scraped} courses, "
            f"{result.sections_scraped} sections, {len(errors)} errors "
            f"in {result.duration_ms / 1000:.1f}s"
        )
        return courses, result


async def run_ingestion(
    config: CrawlConfig,
    subjects: Optional[List[str]] = None,
    persist: bool = True,
    operator: Optional[Operator] = None,
    service=None
) -> ScrapeResult:
    """
    Crawl and, unless persist is False, write the results to Firestore.

    The store is reached before crawling starts, so an unreachable store
    stops the run before any page is fetched. Store failures for individual
    courses are appended to result.errors.

    Raises:
        PersistenceError: if the university record cannot be read or created
    """
    loop = asyncio.get_event_loop()
    university_id = None
    if persist:
        if service is None:
            from .firebase import get_course_service
            service = get_course_service()
        university_id = await loop.run_in_executor(None, service.get_or_create_university, config.profile)

    orchestrator = IngestionOrchestrator(config, operator=operator)
    courses, result = await orchestrator.run(subjects)

    if not persist or not result.success or not courses:
        return result

    stats = await loop.run_in_executor(None, service.store_courses, courses, university_id)

    result.errors.extend(stats["errors"])
    logger.info(
        f"Stored {stats['total_courses']} courses "
        f"({stats['created']} created, {stats['updated']} updated, "
        f"{stats['sections']} sections, {len(stats['errors'])} errors)"
    )
    return result


# Job State

class JobState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobAlreadyRunningError(RuntimeError):
    """Raised when a run is requested while another is in progress"""


class IngestionJob:
    """
    Tracks the single ingestion run a process may have in flight.

    Usage:
        job = IngestionJob(lambda subjects: run_ingestion(config, subjects))
        result = await job.run(["CIS"])
    """

    def __init__(self, pipeline: Callable[[Optional[List[str]]], Awaitable[ScrapeResult]]):
        self._pipeline = pipeline
        self.state = JobState.IDLE
        self.last_result: Optional[ScrapeResult] = None
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None
        self.error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.state is JobState.RUNNING

    def begin(self):
        """Claim the job. Raises JobAlreadyRunningError if it is taken."""
        if self.is_running:
            raise JobAlreadyRunningError("An ingestion run is already in progress")
        self.state = JobState.RUNNING
        self.started_at = datetime.now(timezone.utc)
        self.finished_at = None
        self.error = None

    async def run(self, subjects: Optional[List[str]] = None, claimed: bool = False) -> ScrapeResult:
        """
        Execute the pipeline.

        Args:
            subjects: Subject codes, or None for all
            claimed: True when the caller already called begin()
        """
        if not claimed:
            self.begin()

        try:
            result = await self._pipeline(subjects)
        except Exception as e:
            self.state = JobState.FAILED
            self.error = str(e)
            logger.exception("Ingestion run failed")
            raise
        finally:
            self.finished_at = datetime.now(timezone.utc)

        self.last_result = result
        self.state = JobState.COMPLETED if result.success else JobState.FAILED
        return result

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "is_running": self.is_running,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }
