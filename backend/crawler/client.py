"""
Browser Client with Rate Limiting and Block Detection

Provides the headless-browser capability the crawler runs on:
- One Chromium launch per run, with automation flags disabled
- Isolated sessions with a realistic user agent, headers, locale,
  timezone and geolocation for the institution being crawled
- A shared, jittered rate limiter applied after every navigation
- Detection of "you look like a bot" interstitial pages

Nothing outside this module talks to Playwright directly.
"""

import asyncio
import random
import time
from typing import Callable, Dict, List, Optional, Any, Awaitable

from playwright.async_api import (
    async_playwright,
    Browser,
    BrowserContext,
    Page,
    Playwright,
    Error as PlaywrightError,
    TimeoutError as PlaywrightTimeoutError,
)

from core.config import CrawlConfig
from core.logging import get_logger

logger = get_logger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36"
)

EXTRA_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate, br",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
    "Upgrade-Insecure-Requests": "1",
}

LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--no-sandbox",
    "--disable-setuid-sandbox",
]

VIEWPORT = {"width": 1920, "height": 1080}

STEALTH_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
"""

# Lowercase phrases seen on interstitial / bot-check pages
BLOCK_PHRASES = (
    "don't smell human",
    "dont smell human",
    "are you a robot",
    "verify you are human",
    "captcha",
    "access denied",
    "unusual traffic",
)

DEFAULT_JITTER = 0.5


# Errors

class CrawlError(Exception):
    """Base class for crawl failures"""


class NavigationError(CrawlError):
    """A page could not be loaded (timeout, DNS, connection reset...)"""

    def __init__(self, url: str, message: str):
        super().__init__(f"{url}: {message}")
        self.url = url


class BlockDetectedError(NavigationError):
    """The site served a bot-check page instead of content"""

    def __init__(self, url: str, phrase: str):
        super().__init__(url, f"blocked by bot detection ({phrase!r})")
        self.phrase = phrase


class BrowserLaunchError(CrawlError):
    """The browser could not be started; nothing can be crawled"""


def detect_block(text: Optional[str]) -> Optional[str]:
    """Return the matched block phrase if the page text is a bot-check page"""
    lowered = (text or "").lower().replace("’", "'")
    for phrase in BLOCK_PHRASES:
        if phrase in lowered:
            return phrase
    return None


# Rate Limiter

class RateLimiter:
    """
    Slot-based limiter shared by every worker of a run.

    Each call to throttle() reserves the next free slot of
    delay_ms * (1 +/- jitter) and sleeps until that slot ends, so concurrent
    workers queue up behind each other instead of multiplying the request rate.
    """

    def __init__(
        self,
        delay_ms: int,
        jitter: float = DEFAULT_JITTER,
        rng: Optional[random.Random] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        clock: Optional[Callable[[], float]] = None
    ):
        if delay_ms < 0:
            raise ValueError(f"delay_ms must be >= 0, got {delay_ms}")
        if not 0 <= jitter < 1:
            raise ValueError(f"jitter must be in [0, 1), got {jitter}")
        self.delay_ms = delay_ms
        self.jitter = jitter
        self._rng = rng or random.Random()
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic
        self._next_slot = 0.0
        self._lock = asyncio.Lock()

    def next_delay(self) -> float:
        """Jittered delay in seconds"""
        factor = 1 + self._rng.uniform(-self.jitter, self.jitter)
        return max(0.0, self.delay_ms * factor / 1000)

    async def throttle(self) -> float:
        """Wait out this caller's slot. Returns the seconds slept."""
        async with self._lock:
            now = self._clock()
            start = max(now, self._next_slot)
            self._next_slot = start + self.next_delay()
            wait = self._next_slot - now

        if wait > 0:
            await self._sleep(wait)
        return wait

    async def pause(self, ms: int):
        """Fixed wait that does not consume a rate-limit slot"""
        if ms > 0:
            await self._sleep(ms / 1000)


# Browser Session

class BrowserSession:
    """One isolated browser context with a single page"""

    def __init__(self, context: BrowserContext, page: Page, rng: Optional[random.Random] = None):
        self._context = context
        self._page = page
        self._rng = rng or random.Random()
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def navigate(self, url: str, wait_until: str = "load", timeout_ms: int = 30000):
        """
        Load a URL.

        Raises:
            NavigationError: on timeout or any navigation failure
        """
        try:
            await self._page.goto(url, wait_until=wait_until, timeout=timeout_ms)
        except PlaywrightTimeoutError:
            raise NavigationError(url, f"timed out after {timeout_ms}ms")
        except PlaywrightError as e:
            raise NavigationError(url, str(e))

    async def _evaluate(self, script: str, arg: Any = None) -> Any:
        """
        Run a script in the page.

        Raises:
            NavigationError: if the page, its context or the browser went away
        """
        try:
            return await self._page.evaluate(script, arg)
        except PlaywrightError as e:
            raise NavigationError(self._page.url, str(e))

    async def text(self) -> str:
        """Rendered text of the page body"""
        return await self._evaluate("() => document.body ? document.body.innerText : ''") or ""

    async def heading(self) -> str:
        """Text of the first <h1>, empty if there is none"""
        return await self._evaluate(
            "() => { const h1 = document.querySelector('h1'); return h1 ? h1.innerText : ''; }"
        ) or ""

    async def links(self) -> List[str]:
        """Fully resolved href of every anchor on the page"""
        return await self._evaluate(
            "() => Array.from(document.querySelectorAll('a')).map(a => a.href).filter(Boolean)"
        ) or []

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        return await self._evaluate(script, arg)

    async def simulate_human(self):
        """Move the mouse and scroll a little, like someone reading the page"""
        try:
            x = 100 + self._rng.random() * 500
            y = 100 + self._rng.random() * 300
            await self._page.mouse.move(x, y, steps=10)
            await self._page.evaluate("() => window.scrollBy({ top: 300, behavior: 'smooth' })")
            await self._page.wait_for_timeout(500)
            await self._page.evaluate("() => window.scrollBy({ top: -100, behavior: 'smooth' })")
            await self._page.wait_for_timeout(300)
        except PlaywrightError as e:
            logger.debug(f"Human simulation interrupted: {e}")

    async def settle(self, timeout_ms: int = 10000):
        """Wait for network idle; pages with long-polling never get there, so a timeout is fine"""
        try:
            await self._page.wait_for_load_state("networkidle", timeout=timeout_ms)
        except PlaywrightTimeoutError:
            logger.debug(f"Network did not go idle within {timeout_ms}ms")
        except PlaywrightError as e:
            raise NavigationError(self._page.url, str(e))

    async def close(self):
        if self.closed:
            return
        self.closed = True
        try:
            await self._context.close()
        except PlaywrightError as e:
            logger.debug(f"Error closing browser context: {e}")


# Browser Client

class BrowserClient:
    """
    Owns the Playwright driver and the single browser of an ingestion run.

    Usage:
        async with BrowserClient(config) as client:
            async with await client.open_session() as session:
                await session.navigate(url)
    """

    def __init__(self, config: CrawlConfig, rng: Optional[random.Random] = None):
        self.config = config
        self._rng = rng or random.Random()
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None

    async def __aenter__(self):
        try:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self.config.headless,
                args=LAUNCH_ARGS,
            )
        except PlaywrightError as e:
            await self.close()
            raise BrowserLaunchError(f"Failed to launch browser: {e}") from e

        mode = "headless" if self.config.headless else "headed"
        logger.info(f"Browser launched ({mode})")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _context_options(self) -> Dict[str, Any]:
        profile = self.config.profile
        return {
            "user_agent": USER_AGENT,
            "viewport": VIEWPORT,
            "locale": profile.locale,
            "timezone_id": profile.timezone,
            "geolocation": {"latitude": profile.latitude, "longitude": profile.longitude},
            "permissions": ["geolocation"],
            "extra_http_headers": EXTRA_HEADERS,
        }

    async def open_session(self) -> BrowserSession:
        """
        Create a fresh, isolated session.

        Raises:
            NavigationError: if the browser refuses a new context or page
        """
        if self._browser is None:
            raise CrawlError("Browser not initialized")

        context = None
        try:
            context = await self._browser.new_context(**self._context_options())
            await context.add_init_script(STEALTH_SCRIPT)
            context.set_default_navigation_timeout(self.config.navigation_timeout_ms)
            page = await context.new_page()
        except PlaywrightError as e:
            if context is not None:
                try:
                    await context.close()
                except PlaywrightError:
                    logger.debug("Context already gone after failed session open")
            raise NavigationError("about:blank", f"could not open browser session: {e}")
        return BrowserSession(context, page, rng=self._rng)

    async def close(self):
        """Close the browser and stop the driver. Safe to call twice."""
        browser, self._browser = self._browser, None
        playwright, self._playwright = self._playwright, None

        if browser is not None:
            try:
                await browser.close()
            except PlaywrightError as e:
                logger.warning(f"Error closing browser: {e}")
        if playwright is not None:
            await playwright.stop()
            logger.info("Browser closed")
