import re
import logging
import threading

from .config import Settings
from .errors import CreationError, DriverError
from .manifest import is_manifest
from .sessions import Session, origin_of, source_key

logger = logging.getLogger(__name__)


class ManifestCapture:
    """Collects the first manifest response seen on a tab."""

    def __init__(self, url_pattern):
        self.pattern = re.compile(url_pattern)
        self.url = None
        self.body = None
        self._captured = threading.Event()
        self._lock = threading.Lock()

    def matches(self, url, status):
        return not self._captured.is_set() and status == 200 and bool(self.pattern.search(url))

    def offer(self, url, body):
        if not is_manifest(body):
            return
        with self._lock:
            if self._captured.is_set():
                return
            self.url, self.body = url, body
            self._captured.set()
        logger.info(f"Manifest captured from {url[:80]} ({len(body)} chars)")

    def wait(self, timeout):
        return self._captured.wait(timeout)

    @property
    def captured(self):
        return self._captured.is_set()


class BrowserSessionManager:
    """Opens a tab on an embed page and keeps it alive once its manifest has been captured."""

    def __init__(self, driver, settings=None):
        self.driver = driver
        self.settings = settings or Settings()

    def create_session(self, embed_url):
        settings = self.settings
        logger.info(f"Creating session: {embed_url[:60]}")
        try:
            tab = self.driver.open_tab(settings.user_agent)
        except DriverError as e:
            raise CreationError(f"could not open tab: {e}") from e

        try:
            capture = self._capture_manifest(tab, embed_url)
        except CreationError:
            self._discard_tab(tab)
            raise
        except Exception as e:
            self._discard_tab(tab)
            raise CreationError(f"session setup failed for {embed_url[:80]}: {e}") from e

        if not capture.captured or self.driver.is_closed(tab):
            self._discard_tab(tab)
            raise CreationError(f"no manifest captured for {embed_url[:80]}")

        # the tab stays open: relayed segment fetches run inside it
        logger.info("Session created, tab kept alive for segment relay")
        return Session(
            source_key=source_key(embed_url),
            embed_url=embed_url,
            origin_url=origin_of(embed_url),
            manifest_url=capture.url,
            manifest_body=capture.body,
            tab=tab,
        )

    def _capture_manifest(self, tab, embed_url):
        settings = self.settings
        capture = ManifestCapture(settings.manifest_url_pattern)
        try:
            self.driver.on_response(tab, capture.matches, capture.offer)
        except DriverError as e:
            raise CreationError(f"could not observe responses: {e}") from e

        try:
            self.driver.navigate(tab, embed_url, referer=settings.embed_referer, timeout=settings.navigation_timeout)
        except DriverError as e:
            if not capture.captured:
                logger.error(f"Navigation error: {e}")
                raise CreationError(f"navigation failed for {embed_url[:80]}: {e}") from e
            logger.info(f"Navigation did not settle but manifest was already captured: {e}")

        if capture.wait(settings.capture_timeout):
            return capture

        logger.info("Manifest not captured passively, trying play controls")
        for selector in settings.play_selectors:
            try:
                if self.driver.click(tab, selector):
                    logger.info(f"Clicked {selector}")
                    break
            except DriverError as e:
                raise CreationError(f"tab died while trying play controls: {e}") from e
        capture.wait(settings.play_retry_timeout)
        return capture

    def _discard_tab(self, tab):
        try:
            self.driver.close_tab(tab)
        except DriverError as e:
            logger.warning(f"Closing tab after failed session creation failed: {e}")
