import base64
import itertools
import threading

import pytest

from embedrelay.browser import BrowserDriver
from embedrelay.config import Settings
from embedrelay.errors import TabClosedError

MANIFEST_URL = 'https://cdn.example.com/hls/abc/stream/master.m3u8'
MANIFEST_BODY = (
    '#EXTM3U\n'
    '#EXT-X-VERSION:3\n'
    '#EXT-X-TARGETDURATION:6\n'
    '#EXTINF:6.0,\n'
    'https://cdn.example.com/hls/abc/seg-0.ts\n'
    '#EXTINF:6.0,\n'
    'https://cdn.example.com/hls/abc/seg-1.ts\n'
    '#EXT-X-ENDLIST\n'
)
EMBED_URL = 'https://embed.example.org/e/movie-42'


class FakeTab:
    _ids = itertools.count(1)

    def __init__(self, user_agent):
        self.id = next(self._ids)
        self.user_agent = user_agent
        self.closed = False
        self.close_calls = 0
        self.listeners = []
        self.navigations = []


def echo_upstream(tab, arg):
    """Mock CDN: echoes the Range header back as Content-Range."""
    body = f"segment:{arg['url']}".encode()
    headers = {'content-type': 'video/mp2t', 'content-length': str(len(body))}
    status = 200
    if arg.get('range'):
        status = 206
        headers['content-range'] = arg['range'].replace('bytes=', 'bytes ') + '/1000'
    return {
        'status': status,
        'contentType': 'video/mp2t',
        'data': base64.b64encode(body).decode(),
        'headers': headers,
    }


class FakeDriver(BrowserDriver):
    """In-memory BrowserDriver: navigation replays canned network responses."""

    def __init__(self, responses=None, click_responses=None, clickable=(), evaluate=echo_upstream, navigate_error=None):
        self.responses = list(responses) if responses is not None else [(MANIFEST_URL, 200, MANIFEST_BODY)]
        self.click_responses = list(click_responses or [])
        self.clickable = set(clickable)
        self.evaluate_fn = evaluate
        self.navigate_error = navigate_error
        self.tabs = []
        self.clicks = []
        self.evaluations = []
        self._lock = threading.Lock()

    def open_tab(self, user_agent):
        tab = FakeTab(user_agent)
        with self._lock:
            self.tabs.append(tab)
        return tab

    def _emit(self, tab, url, status, body):
        for matches, callback in list(tab.listeners):
            if matches(url, status):
                callback(url, body)

    def navigate(self, tab, url, referer=None, timeout=30):
        tab.navigations.append((url, referer))
        if self.navigate_error is not None:
            raise self.navigate_error
        for url_, status, body in self.responses:
            self._emit(tab, url_, status, body)

    def on_response(self, tab, matches, callback):
        tab.listeners.append((matches, callback))

    def click(self, tab, selector, timeout=2):
        self.clicks.append(selector)
        if selector not in self.clickable:
            return False
        for url_, status, body in self.click_responses:
            self._emit(tab, url_, status, body)
        return True

    def evaluate(self, tab, script, arg=None, timeout=20):
        if tab.closed:
            raise TabClosedError('Target page, context or browser has been closed')
        self.evaluations.append(arg)
        return self.evaluate_fn(tab, arg)

    def is_closed(self, tab):
        return tab.closed

    def close_tab(self, tab):
        tab.close_calls += 1
        tab.closed = True


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def settings():
    return Settings(
        capture_timeout=0.05,
        play_retry_timeout=0.05,
        navigation_timeout=1,
        relay_acquire_timeout=1.0,
        relay_fetch_timeout=1.0,
        script_timeout=5.0,
        eval_timeout=2.0,
        manifest_url_pattern=r'cdn\.example\.com/.*?/stream/',
        play_selectors=('.jw-icon-display', 'video', '#player'),
        decoder_name='decode',
    )


@pytest.fixture
def driver():
    return FakeDriver()


@pytest.fixture
def clock():
    return FakeClock()
