"""Browser driver seam used by the session manager and the segment relay.

``PlaywrightDriver`` owns one Chromium process for the life of the server.
Playwright's async API runs on a private event loop thread; the public
methods are blocking and safe to call from any request thread.
"""
import asyncio
import logging
import threading
import concurrent.futures

from playwright.async_api import async_playwright, Error as PlaywrightError

from .errors import DriverError, TabClosedError

logger = logging.getLogger(__name__)

LAUNCH_ARGS = [
    '--no-sandbox',
    '--disable-setuid-sandbox',
    '--disable-web-security',
    '--disable-features=IsolateOrigins,site-per-process',
    '--disable-blink-features=AutomationControlled',
]

CLOSED_MARKERS = ('closed', 'destroyed', 'detached', 'crashed', 'target page')


class BrowserDriver:
    """Narrow browser interface: tabs, navigation, response observation and in-page evaluation."""

    def open_tab(self, user_agent):
        raise NotImplementedError

    def navigate(self, tab, url, referer=None, timeout=30):
        raise NotImplementedError

    def on_response(self, tab, matches, callback):
        """Call callback(url, body) for responses where matches(url, status) is true."""
        raise NotImplementedError

    def click(self, tab, selector, timeout=2):
        """Click selector; return False if it could not be clicked."""
        raise NotImplementedError

    def evaluate(self, tab, script, arg=None, timeout=20):
        raise NotImplementedError

    def is_closed(self, tab):
        raise NotImplementedError

    def close_tab(self, tab):
        raise NotImplementedError

    def shutdown(self):
        pass


def _is_closed_error(error):
    message = str(error).lower()
    return any(marker in message for marker in CLOSED_MARKERS)


class PlaywrightDriver(BrowserDriver):
    def __init__(self, headless=True, launch_args=None, call_timeout=60):
        self.headless = headless
        self.launch_args = launch_args or LAUNCH_ARGS
        self.call_timeout = call_timeout
        self._loop = None
        self._thread = None
        self._loop_lock = threading.Lock()
        self._playwright = None
        self._browser = None
        self._browser_lock = None

    def _ensure_loop(self):
        with self._loop_lock:
            if self._loop is not None and self._thread.is_alive():
                return self._loop
            self._loop = asyncio.new_event_loop()
            self._thread = threading.Thread(target=self._loop.run_forever, name='playwright-loop', daemon=True)
            self._thread.start()
            return self._loop

    def _run(self, coro, timeout=None):
        loop = self._ensure_loop()
        future = asyncio.run_coroutine_threadsafe(coro, loop)
        try:
            return future.result(timeout or self.call_timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise DriverError(f"browser call timed out after {timeout or self.call_timeout}s")
        except PlaywrightError as e:
            if _is_closed_error(e):
                raise TabClosedError(str(e)) from e
            raise DriverError(str(e)) from e

    async def _get_browser(self):
        if self._browser_lock is None:
            self._browser_lock = asyncio.Lock()
        async with self._browser_lock:
            if self._browser is not None and self._browser.is_connected():
                return self._browser
            if self._browser is not None:
                logger.info("Browser disconnected, relaunching")
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            logger.info("Launching Chromium browser...")
            self._browser = await self._playwright.chromium.launch(headless=self.headless, args=self.launch_args)
            return self._browser

    async def _open_tab(self, user_agent):
        browser = await self._get_browser()
        # new_page gives every tab its own context, closed together with the page
        return await browser.new_page(user_agent=user_agent)

    def open_tab(self, user_agent):
        return self._run(self._open_tab(user_agent))

    def navigate(self, tab, url, referer=None, timeout=30):
        self._run(tab.goto(url, referer=referer, wait_until='networkidle', timeout=timeout * 1000), timeout=timeout + 5)

    def on_response(self, tab, matches, callback):
        async def handle(response):
            try:
                if not matches(response.url, response.status):
                    return
                body = await response.text()
            except PlaywrightError as e:
                logger.debug(f"Could not read response {response.url[:80]}: {e}")
                return
            callback(response.url, body)

        # page.on must be called on the loop thread
        async def attach():
            tab.on('response', handle)

        self._run(attach())

    def click(self, tab, selector, timeout=2):
        try:
            self._run(tab.click(selector, timeout=timeout * 1000), timeout=timeout + 5)
            return True
        except TabClosedError:
            raise
        except DriverError as e:
            logger.debug(f"Click on {selector} failed: {e}")
            return False

    def evaluate(self, tab, script, arg=None, timeout=20):
        if tab.is_closed():
            raise TabClosedError('tab is closed')
        return self._run(tab.evaluate(script, arg), timeout=timeout)

    def is_closed(self, tab):
        return tab.is_closed()

    def close_tab(self, tab):
        if tab.is_closed():
            return
        try:
            self._run(tab.close(), timeout=10)
        except DriverError as e:
            logger.debug(f"Tab close failed: {e}")

    async def _shutdown(self):
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    def shutdown(self):
        if self._loop is None:
            return
        try:
            self._run(self._shutdown(), timeout=15)
        except DriverError as e:
            logger.warning(f"Browser shutdown failed: {e}")
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=5)
        self._loop = None
