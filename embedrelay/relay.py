import base64
import logging
from dataclasses import dataclass, field

from .errors import CreationError, DriverError, RelayError, TabClosedError
from .sessions import source_key

logger = logging.getLogger(__name__)

# Runs inside the embed tab so the request carries the tab's origin, cookies
# and TLS fingerprint. The body is base64-encoded in chunks: spreading a whole
# segment into String.fromCharCode overflows the call stack.
IN_PAGE_FETCH = '''
async ({url, range, chunkSize}) => {
    const headers = {};
    if (range) {
        headers['Range'] = range;
    }
    try {
        const resp = await fetch(url, { headers });
        const bytes = new Uint8Array(await resp.arrayBuffer());
        let binary = '';
        for (let i = 0; i < bytes.length; i += chunkSize) {
            const chunk = bytes.subarray(i, Math.min(i + chunkSize, bytes.length));
            binary += String.fromCharCode.apply(null, Array.from(chunk));
        }
        const respHeaders = {};
        resp.headers.forEach((value, key) => { respHeaders[key] = value; });
        return {
            status: resp.status,
            contentType: resp.headers.get('content-type') || 'video/mp2t',
            data: btoa(binary),
            headers: respHeaders,
        };
    } catch (e) {
        return { error: String(e && e.message || e) };
    }
}
'''


@dataclass
class RelayResponse:
    status: int
    content_type: str
    body: bytes
    headers: dict = field(default_factory=dict)


class SegmentRelay:
    """Fetch media segments through the live tab of a browser session."""

    def __init__(self, registry, driver, manager=None, acquire_timeout=5.0, fetch_timeout=20.0, chunk_size=8192):
        self.registry = registry
        self.driver = driver
        self.manager = manager
        self.acquire_timeout = acquire_timeout
        self.fetch_timeout = fetch_timeout
        self.chunk_size = chunk_size

    def session_for(self, embed_url=None):
        """Pick the session to relay through.

        With an embed URL the session for that source is used, and recreated
        if it was closed. Without one, any live session will do.
        """
        if embed_url and self.manager is not None:
            try:
                return self.registry.get_or_create(source_key(embed_url), lambda: self.manager.create_session(embed_url))
            except CreationError as e:
                raise RelayError(RelayError.NO_SESSION, f"could not recreate session: {e}") from e
        session = None
        if embed_url:
            session = self.registry.get(source_key(embed_url))
        session = session or self.registry.find_any()
        if session is None:
            logger.error("No active session for segment fetch")
            raise RelayError(RelayError.NO_SESSION, 'no active browser session')
        return session

    def fetch_segment(self, target_url, range_header=None, embed_url=None):
        session = self.session_for(embed_url)

        if not session.lock.acquire(timeout=self.acquire_timeout):
            raise RelayError(RelayError.BUSY, f"session {session.source_key} busy for {self.acquire_timeout}s")
        try:
            result = self.driver.evaluate(
                session.tab,
                IN_PAGE_FETCH,
                {'url': target_url, 'range': range_header, 'chunkSize': self.chunk_size},
                timeout=self.fetch_timeout,
            )
        except TabClosedError as e:
            logger.warning(f"Tab for {session.source_key} is gone, invalidating: {e}")
            self.registry.invalidate(session.source_key, session)
            raise RelayError(RelayError.DETACHED, str(e)) from e
        except DriverError as e:
            logger.warning(f"In-page fetch failed for {target_url[:80]}: {e}")
            raise RelayError(RelayError.FETCH, str(e)) from e
        finally:
            session.lock.release()

        if not isinstance(result, dict) or result.get('error'):
            message = result.get('error') if isinstance(result, dict) else 'malformed in-page result'
            logger.warning(f"Segment fetch error: {message}")
            raise RelayError(RelayError.FETCH, message)

        try:
            body = base64.b64decode(result.get('data') or '')
        except ValueError as e:
            raise RelayError(RelayError.FETCH, f"undecodable segment body: {e}") from e
        headers = {str(k).lower(): str(v) for k, v in (result.get('headers') or {}).items()}
        return RelayResponse(
            status=int(result.get('status') or 502),
            content_type=result.get('contentType') or headers.get('content-type') or 'video/mp2t',
            body=body,
            headers=headers,
        )
