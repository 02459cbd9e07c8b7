import re
import time
import hashlib
import logging
import threading
from dataclasses import dataclass, field
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)


def source_key(embed_url):
    """Stable identity for an embed URL: scheme, host case and fragment do not matter."""
    parts = urlsplit(embed_url.strip())
    normalized = (parts.netloc.lower() + parts.path + ('?' + parts.query if parts.query else '')) or embed_url.strip()
    readable = re.sub(r'[^a-zA-Z0-9]', '', normalized)[:40]
    digest = hashlib.sha1(normalized.encode('utf-8')).hexdigest()[:12]
    return f"{readable}-{digest}"


def origin_of(url):
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


@dataclass(eq=False)
class Session:
    """A live browser tab bound to one content source."""
    source_key: str
    embed_url: str
    origin_url: str
    manifest_url: str
    manifest_body: str
    tab: object
    created_at: float = field(default_factory=time.monotonic)
    last_used_at: float = field(default_factory=time.monotonic)
    closed: bool = False
    # one in-tab fetch at a time
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def busy(self):
        return self.lock.locked()

    def touch(self, now=None):
        self.last_used_at = time.monotonic() if now is None else now


class SessionRegistry:
    """Table of live sessions keyed by source key.

    Creation is single-flight per key; lookups take the table lock only
    briefly. Tabs are closed through the driver exactly once, either on
    invalidation, replacement, the periodic sweep or shutdown.
    """

    def __init__(self, driver, ttl=15 * 60, sweep_interval=5 * 60, clock=time.monotonic):
        self.driver = driver
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._sessions = {}
        self._creating = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper = None

    def __len__(self):
        with self._lock:
            return len(self._sessions)

    def _expired(self, session, now):
        return now - session.last_used_at > self.ttl

    def _tab_alive(self, session):
        if session.closed:
            return False
        try:
            return not self.driver.is_closed(session.tab)
        except Exception as e:
            logger.warning(f"Tab liveness check failed for {session.source_key}: {e}")
            return False

    def _live(self, session):
        return not self._expired(session, self._clock()) and self._tab_alive(session)

    def _close(self, session):
        with self._lock:
            if session.closed:
                return
            session.closed = True
        try:
            self.driver.close_tab(session.tab)
        except Exception as e:
            logger.warning(f"Closing tab for {session.source_key} failed: {e}")

    def get(self, key):
        """Return the live session for key, or None."""
        with self._lock:
            session = self._sessions.get(key)
        if session is not None and self._live(session):
            session.touch(self._clock())
            return session
        return None

    def get_or_create(self, key, factory):
        session = self.get(key)
        if session is not None:
            return session

        # entry is [lock, callers]; dropped when the last caller for key leaves
        with self._lock:
            entry = self._creating.get(key)
            if entry is None:
                entry = self._creating[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                # another caller may have finished creating while we waited
                session = self.get(key)
                if session is not None:
                    return session
                with self._lock:
                    stale = self._sessions.pop(key, None)
                if stale is not None:
                    logger.info(f"Replacing stale session {key}")
                    self._close(stale)

                session = factory()
                session.touch(self._clock())
                with self._lock:
                    self._sessions[key] = session
                    active = len(self._sessions)
                logger.info(f"Session {key} registered ({active} active)")
                return session
        finally:
            with self._lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._creating[key]

    def find_any(self):
        """Return the most recently used live session, dropping dead ones on the way."""
        with self._lock:
            candidates = sorted(self._sessions.values(), key=lambda s: s.last_used_at, reverse=True)
        for session in candidates:
            if self._live(session):
                session.touch(self._clock())
                return session
            if not self._tab_alive(session):
                self._discard(session)
        return None

    def _discard(self, session):
        with self._lock:
            if self._sessions.get(session.source_key) is session:
                del self._sessions[session.source_key]
        self._close(session)

    def invalidate(self, key, session=None):
        """Close and forget the session for key. When session is given, only that exact session is removed."""
        with self._lock:
            current = self._sessions.get(key)
            if current is None or (session is not None and current is not session):
                current = None
            else:
                del self._sessions[key]
        if current is not None:
            logger.info(f"Invalidating session: {key}")
            self._close(current)
        if session is not None:
            self._close(session)

    def sweep(self):
        """Close sessions that expired or whose tab died. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            items = list(self._sessions.items())
        doomed = [s for _, s in items if self._expired(s, now) or not self._tab_alive(s)]
        for session in doomed:
            logger.info(f"Closing expired session: {session.source_key}")
            self._discard(session)
        return len(doomed)

    def start(self):
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name='session-sweeper', daemon=True)
        self._sweeper.start()

    def _sweep_loop(self):
        while not self._stop.wait(self.sweep_interval):
            try:
                removed = self.sweep()
                if removed:
                    logger.info(f"Session sweep removed {removed} session(s)")
            except Exception:
                logger.exception("Session sweep failed")

    def stop(self):
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None

    def close_all(self):
        self.stop()
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            self._close(session)
