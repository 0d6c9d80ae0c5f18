"""
Playwright helpers shared by the rendered-page sources.

Every wait in here is bounded: navigation and selector waits by the
browser timeout, the bot-challenge bypass by an attempt counter.
"""

from typing import List, Optional, Sequence
from playwright.async_api import (
    async_playwright,
    Browser,
    BrowserContext,
    Page,
    Playwright,
    Error as PlaywrightError,
    TimeoutError as PlaywrightTimeoutError
)
from core.config import settings
from core.exceptions import NavigationError, BotChallengeError
import logging

logger = logging.getLogger(__name__)

ACCEPT_LANGUAGE = "en-GB,en-US;q=0.9,en;q=0.8"

# Slider-style verification widget
CHALLENGE_TRACK = "#nc_1__scale_text"
CHALLENGE_HANDLE = "#nc_1_n1z"


class BrowserSession:
    """
    One chromium browser with a single page.

    start() is idempotent and relaunches the browser when the previous page
    was closed (crash or explicit close), so a retried run can call it
    unconditionally.
    """

    def __init__(
        self,
        headless: Optional[bool] = None,
        timeout_ms: Optional[int] = None,
        proxy: Optional[str] = None
    ):
        self.headless = settings.BROWSER_HEADLESS if headless is None else headless
        self.timeout_ms = timeout_ms or settings.BROWSER_TIMEOUT_MS
        self.proxy = proxy
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None

    @property
    def started(self) -> bool:
        return self.page is not None and not self.page.is_closed()

    async def start(self) -> Page:
        if self.started:
            return self.page
        await self.close()

        try:
            self._playwright = await async_playwright().start()
            launch_options = {"headless": self.headless}
            if self.proxy:
                launch_options["proxy"] = {"server": self.proxy}
            self._browser = await self._playwright.chromium.launch(**launch_options)
            self._context = await self._browser.new_context(
                extra_http_headers={"Accept-Language": ACCEPT_LANGUAGE}
            )
            self._context.set_default_timeout(self.timeout_ms)
            self.page = await self._context.new_page()
        except PlaywrightError as e:
            await self.close()
            raise NavigationError("Browser launch failed", original_exception=e)

        logger.info("Browser started")
        return self.page

    async def close(self) -> None:
        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError as e:
                logger.debug(f"Browser already gone: {e}")
        if self._playwright is not None:
            await self._playwright.stop()
            logger.info("Browser closed")
        self._playwright = None
        self._browser = None
        self._context = None
        self.page = None


async def goto(page: Page, url: str, wait_until: str = "domcontentloaded") -> None:
    """Navigate, translating browser failures into retryable NavigationError."""
    try:
        await page.goto(url, wait_until=wait_until)
    except PlaywrightTimeoutError as e:
        raise NavigationError(f"Timed out loading {url}", context={"url": url}, original_exception=e)
    except PlaywrightError as e:
        raise NavigationError(f"Navigation to {url} failed", context={"url": url}, original_exception=e)


async def wait_for(page, selector: str, timeout_ms: Optional[int] = None) -> None:
    try:
        await page.wait_for_selector(selector, state="visible", timeout=timeout_ms or settings.BROWSER_TIMEOUT_MS)
    except PlaywrightTimeoutError as e:
        raise NavigationError(
            f"Selector {selector} did not appear",
            context={"selector": selector},
            original_exception=e
        )


async def dismiss_modals(page, selectors: Sequence[str]) -> int:
    """Close any interstitial dialog matching selectors; returns how many were closed."""
    closed = 0
    for selector in selectors:
        element = await page.query_selector(selector)
        if element is None:
            continue
        try:
            await element.click()
            closed += 1
            logger.debug(f"Closed modal {selector}")
        except PlaywrightError as e:
            logger.debug(f"Modal {selector} vanished before click: {e}")
    return closed


async def _drag_slider(page, track) -> None:
    handle = await page.query_selector(CHALLENGE_HANDLE)
    if handle is None:
        return
    track_box = await track.bounding_box()
    handle_box = await handle.bounding_box()
    if not track_box or not handle_box:
        return

    start_x = handle_box["x"] + handle_box["width"] / 2
    start_y = handle_box["y"] + handle_box["height"] / 2
    await page.mouse.move(start_x, start_y)
    await page.mouse.down()
    await page.mouse.move(handle_box["x"] + track_box["width"], start_y, steps=20)
    await page.mouse.up()


async def clear_challenge(page, max_attempts: Optional[int] = None, settle_ms: int = 2000) -> int:
    """
    Drag the verification slider until it is gone.

    Returns:
        Number of drag attempts that were needed (0 when no challenge)

    Raises:
        BotChallengeError: challenge still present after max_attempts drags
    """
    max_attempts = max_attempts or settings.CHALLENGE_MAX_ATTEMPTS

    for attempt in range(max_attempts + 1):
        track = await page.query_selector(CHALLENGE_TRACK)
        if track is None:
            if attempt:
                logger.info(f"Bot challenge cleared after {attempt} attempt(s)")
            return attempt
        if attempt == max_attempts:
            break

        logger.info(f"Bot challenge present, drag attempt {attempt + 1}/{max_attempts}")
        await _drag_slider(page, track)
        await page.wait_for_timeout(settle_ms)

    raise BotChallengeError(
        f"Bot challenge not cleared after {max_attempts} attempts",
        context={"url": page.url, "attempts": max_attempts}
    )


async def text_of(root, selector: str) -> Optional[str]:
    """Stripped text of the first match, or None."""
    element = await root.query_selector(selector)
    if element is None:
        return None
    text = await element.text_content()
    return text.strip() if text is not None else None


async def texts_of(root, selector: str) -> List[str]:
    elements = await root.query_selector_all(selector)
    texts = []
    for element in elements:
        text = await element.text_content()
        if text and text.strip():
            texts.append(text.strip())
    return texts


async def attrs_of(root, selector: str, attribute: str) -> List[str]:
    elements = await root.query_selector_all(selector)
    values = []
    for element in elements:
        value = await element.get_attribute(attribute)
        if value:
            values.append(value)
    return values
