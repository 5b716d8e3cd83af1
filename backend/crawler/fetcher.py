"""
Coursicle Fetcher for the Course Catalog

Walks the catalog site through a BrowserClient:
- Subject discovery from the catalog index page
- Course discovery from each subject page
- Rendered text of each course detail page

Failures never propagate. They are appended to the fetcher's error log and
the operation returns an empty result, so one bad page never stops a run.
"""

import re
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from core.config import CrawlConfig
from core.logging import get_logger
from core.models import CoursePage, CourseRef, ErrorKind, ScrapeError
from .client import (
    BrowserClient,
    BrowserSession,
    BlockDetectedError,
    CrawlError,
    NavigationError,
    RateLimiter,
    detect_block,
)

logger = get_logger(__name__)

SUBJECT_LINK_PATTERN = re.compile(r'/courses/([A-Z]{2,4})/?$', re.I)

# Called with the blocked URL; returns once a human has cleared the check
Operator = Callable[[str], Awaitable[None]]


class WorkUnitState(Enum):
    """Lifecycle of one work unit: a subject listing or a course page"""
    PENDING = "pending"
    FETCHING = "fetching"
    EXTRACTED = "extracted"
    BLOCK_DETECTED = "block_detected"
    NETWORK_ERROR = "network_error"


TERMINAL_STATES = {
    WorkUnitState.EXTRACTED,
    WorkUnitState.BLOCK_DETECTED,
    WorkUnitState.NETWORK_ERROR,
}


class CoursicleFetcher:
    """Fetches subjects, course lists and course pages from Coursicle."""

    def __init__(
        self,
        client: BrowserClient,
        limiter: RateLimiter,
        config: CrawlConfig,
        operator: Optional[Operator] = None
    ):
        self.client = client
        self.limiter = limiter
        self.config = config
        self.operator = operator
        self.errors: List[ScrapeError] = []
        self.units: Dict[str, WorkUnitState] = {}

    # Bookkeeping

    def _record(self, kind: ErrorKind, message: str, subject: Optional[str] = None, number: Optional[int] = None):
        self.errors.append(ScrapeError(kind=kind, message=message, subject=subject, number=number))

    def _transition(self, key: str, state: WorkUnitState):
        """Move a work unit (subject code or course code) to a new state"""
        current = self.units.get(key, WorkUnitState.PENDING)
        if current in TERMINAL_STATES:
            raise CrawlError(f"{key} already finished as {current.value}")
        if state is WorkUnitState.FETCHING and current is not WorkUnitState.PENDING:
            raise CrawlError(f"{key} cannot start fetching from {current.value}")
        self.units[key] = state

    def register(self, refs: List[CourseRef]):
        """Mark discovered courses as pending"""
        for ref in refs:
            self.units.setdefault(ref.code, WorkUnitState.PENDING)

    def record_unit_failure(self, ref: CourseRef, message: str):
        """Close out a course that failed outside the fetcher's own error handling"""
        if self.units.get(ref.code) not in TERMINAL_STATES:
            self.units[ref.code] = WorkUnitState.NETWORK_ERROR
        self._record(ErrorKind.NETWORK, message, subject=ref.subject, number=ref.number)

    def record_timeout(self, ref: CourseRef, seconds: float):
        """Called by the orchestrator when a unit overran its time budget"""
        self.record_unit_failure(ref, f"Timed out after {seconds:.0f}s")

    def count(self, state: WorkUnitState) -> int:
        return sum(1 for s in self.units.values() if s is state)

    # URLs

    def subjects_url(self) -> str:
        return f"{self.config.catalog_url}/"

    def subject_url(self, subject: str) -> str:
        return f"{self.config.catalog_url}/{subject}/"

    def course_url(self, ref: CourseRef) -> str:
        return f"{self.config.catalog_url}/{ref.subject}/{ref.number_str}/"

    # Navigation helpers

    async def _load(self, session: BrowserSession, url: str, wait_until: str = "load") -> str:
        """
        Navigate, wait out the rate limit and return the page text.

        In manual-assist mode a block page suspends until the operator has
        cleared it, then the page is re-read. Unattended, a block page raises.

        Raises:
            NavigationError: navigation failed or the page is still blocked
        """
        await session.navigate(url, wait_until=wait_until, timeout_ms=self.config.navigation_timeout_ms)
        await self.limiter.throttle()
        return await self._read_checked(session, url)

    async def _read_checked(self, session: BrowserSession, url: str) -> str:
        text = await session.text()
        phrase = detect_block(text)
        if phrase is None:
            return text

        if not (self.config.manual_assist and self.operator):
            raise BlockDetectedError(url, phrase)

        logger.warning(f"Bot check on {url}; waiting for the operator")
        await self.operator(url)
        text = await session.text()
        phrase = detect_block(text)
        if phrase is not None:
            raise BlockDetectedError(url, phrase)
        logger.info("Bot check cleared, continuing")
        return text

    # Operations

    async def _read_listing(self, url: str) -> List[str]:
        """Every link on a listing page, loaded in its own session"""
        session = None
        try:
            session = await self.client.open_session()
            await self._load(session, url, wait_until="domcontentloaded")
            await session.settle(self.config.load_timeout_ms)
            return await session.links()
        finally:
            if session is not None:
                await session.close()

    async def get_subjects(self) -> List[str]:
        """Discover every subject code listed on the catalog index"""
        url = self.subjects_url()
        logger.info(f"Fetching subjects from: {url}")

        try:
            links = await self._read_listing(url)
        except NavigationError as e:
            logger.error(f"Error fetching subjects: {e}")
            self._record(ErrorKind.NETWORK, f"Failed to fetch subjects: {e}")
            return []

        subjects: List[str] = []
        for href in links:
            match = SUBJECT_LINK_PATTERN.search(href)
            if match:
                code = match.group(1).upper()
                if code not in subjects:
                    subjects.append(code)

        logger.info(f"Found {len(subjects)} subjects")
        return subjects

    async def get_course_list(self, subject: str) -> List[CourseRef]:
        """Discover the courses of one subject, keeping leading zeros of numbers"""
        subject = subject.upper()
        url = self.subject_url(subject)
        self._transition(subject, WorkUnitState.FETCHING)
        logger.info(f"Fetching courses for {subject} from: {url}")

        try:
            links = await self._read_listing(url)
        except BlockDetectedError as e:
            logger.warning(f"Blocked on subject {subject}: {e}")
            self._transition(subject, WorkUnitState.BLOCK_DETECTED)
            self._record(ErrorKind.NETWORK, f"Failed to fetch course list: {e}", subject=subject)
            return []
        except NavigationError as e:
            logger.error(f"Error fetching course list for {subject}: {e}")
            self._transition(subject, WorkUnitState.NETWORK_ERROR)
            self._record(ErrorKind.NETWORK, f"Failed to fetch course list: {e}", subject=subject)
            return []

        pattern = re.compile(rf'/courses/{re.escape(subject)}/(\d{{3,4}})/?$', re.I)
        refs: Dict[str, CourseRef] = {}
        for href in links:
            match = pattern.search(href)
            if match and match.group(1) not in refs:
                number_str = match.group(1)
                refs[number_str] = CourseRef(subject=subject, number=int(number_str), number_str=number_str)

        courses = list(refs.values())
        self._transition(subject, WorkUnitState.EXTRACTED)
        self.register(courses)
        logger.info(f"Found {len(courses)} courses for {subject}")
        return courses

    async def fetch_course_page(self, ref: CourseRef, session: Optional[BrowserSession] = None) -> Optional[CoursePage]:
        """
        Fetch the rendered text of one course page.

        Args:
            ref: Course to fetch
            session: Session to reuse (worker pools pass their own);
                     a temporary one is opened otherwise
        """
        url = self.course_url(ref)
        self.units.setdefault(ref.code, WorkUnitState.PENDING)
        self._transition(ref.code, WorkUnitState.FETCHING)
        logger.debug(f"Scraping: {ref.code}")

        owned = session is None
        try:
            if owned:
                session = await self.client.open_session()
            await session.navigate(url, wait_until="load", timeout_ms=self.config.navigation_timeout_ms)
            await self.limiter.throttle()
            await session.simulate_human()
            await session.settle(self.config.load_timeout_ms)
            text = await self._read_checked(session, url)
            heading = await session.heading()
        except BlockDetectedError as e:
            logger.warning(f"Blocked on {ref.code}: {e}")
            self._transition(ref.code, WorkUnitState.BLOCK_DETECTED)
            self._record(ErrorKind.NETWORK, str(e), subject=ref.subject, number=ref.number)
            return None
        except NavigationError as e:
            logger.error(f"Error scraping {ref.code}: {e}")
            self._transition(ref.code, WorkUnitState.NETWORK_ERROR)
            self._record(ErrorKind.NETWORK, str(e), subject=ref.subject, number=ref.number)
            return None
        finally:
            if owned and session is not None:
                await session.close()

        self._transition(ref.code, WorkUnitState.EXTRACTED)
        return CoursePage(ref=ref, url=url, text=text, heading=heading.strip())
