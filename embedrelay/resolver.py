import re
import json
import hashlib
import logging
from dataclasses import dataclass, field
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup

from .config import Settings
from .errors import ResolutionError, ScriptError, ScriptTimeout
from .sandbox import ScriptSandbox

logger = logging.getLogger(__name__)

# `var config = {...};` style assignments produced by packed player decoders
CONFIG_LITERAL = re.compile(r'(?:var|let|const)\s+[A-Za-z_$][\w$]*\s*=\s*(\{[\s\S]+?\});')

JS_SCRIPT_TYPES = ('', 'text/javascript', 'application/javascript', 'module', 'text/ecmascript', 'application/ecmascript')

CACHE_PREFIX = 'stream:'


@dataclass(frozen=True)
class StreamDescriptor:
    file: str
    type: str = 'hls'
    image: str = ''
    labels: dict = field(default_factory=dict)

    def to_dict(self):
        data = {'file': self.file, 'type': self.type}
        if self.image:
            data['image'] = self.image
        if self.labels:
            data['labels'] = dict(self.labels)
        return data

    @classmethod
    def from_dict(cls, data):
        return cls(file=data['file'], type=data.get('type') or 'hls', image=data.get('image') or '', labels=dict(data.get('labels') or {}))


def guess_stream_type(url):
    path = urlparse(url).path.lower()
    if path.endswith('.m3u8'):
        return 'hls'
    if path.endswith('.mp4'):
        return 'mp4'
    if path.endswith('.mpd'):
        return 'dash'
    return 'hls'


def descriptor_from_config(config):
    """Build a StreamDescriptor from a decoded player config, or None if it names no media URL."""
    if not isinstance(config, dict):
        return None
    sources = config.get('sources')
    media_url, media_type, labels = '', None, {}
    if isinstance(sources, list):
        entries = [s for s in sources if isinstance(s, dict) and s.get('file')]
        if entries:
            media_url = entries[0]['file']
            media_type = entries[0].get('type')
            labels = {str(s['label']): s['file'] for s in entries if s.get('label')}
    elif isinstance(sources, dict):
        media_url = sources.get('file') or ''
        media_type = sources.get('type')
        if isinstance(sources.get('labels'), dict):
            labels = sources['labels']
    media_url = media_url or config.get('file') or ''
    if not isinstance(media_url, str) or not media_url.strip():
        return None
    media_url = media_url.strip()
    image = config.get('image') if isinstance(config.get('image'), str) else ''
    return StreamDescriptor(
        file=media_url,
        type=media_type or guess_stream_type(media_url),
        image=image or '',
        labels={str(k): str(v) for k, v in labels.items()},
    )


def cache_key(embed_url):
    return CACHE_PREFIX + hashlib.sha1(embed_url.encode('utf-8')).hexdigest()


class SandboxResolver:
    """Recover a stream descriptor by replaying an embed page's own decoding scripts."""

    def __init__(self, cache, settings=None, http=None):
        self.cache = cache
        self.settings = settings or Settings()
        self.http = http or requests.Session()
        self.http.headers.update({
            'User-Agent': self.settings.user_agent,
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
            'Accept-Language': 'id-ID,id;q=0.9,en-US;q=0.8,en;q=0.7',
        })

    def resolve(self, embed_url):
        key = cache_key(embed_url)
        cached = self.cache.get(key)
        if cached:
            logger.info(f"Stream cache hit for {embed_url[:60]}")
            return StreamDescriptor.from_dict(cached)

        logger.info(f"Extracting stream from: {embed_url[:80]}")
        html = self._fetch(embed_url, referer=self.settings.embed_referer)
        external_urls, inline_scripts = self.collect_scripts(html, embed_url)

        external_scripts = []
        for script_url in external_urls:
            try:
                body = self._fetch(script_url, referer=embed_url)
            except ResolutionError as e:
                logger.warning(f"Skipping external script: {e}")
                continue
            if len(body) > self.settings.max_script_bytes:
                logger.info(f"Skipping oversized script {script_url[:80]} ({len(body)} bytes)")
                continue
            external_scripts.append((script_url, body))

        sandbox = ScriptSandbox(embed_url, self.settings.user_agent, timeout=self.settings.script_timeout)
        for script_url, body in external_scripts:
            self._run(sandbox, body, script_url)

        decoder = self.settings.decoder_name
        if decoder and not sandbox.is_function(decoder):
            raise ResolutionError(f"decoding routine {decoder} not defined after running {len(external_scripts)} external scripts")

        for index, body in enumerate(inline_scripts):
            self._run(sandbox, body, f"inline #{index}")

        descriptor = self.parse_evaluations(sandbox.evaluations)
        if descriptor is None:
            raise ResolutionError(f"no stream config found in {len(sandbox.evaluations)} evaluated strings")

        logger.info(f"Stream extracted: {descriptor.file[:80]}")
        self.cache.set(key, descriptor.to_dict(), self.settings.cache_ttl)
        return descriptor

    def _fetch(self, url, referer=None):
        headers = {'Referer': referer} if referer else {}
        try:
            response = self.http.get(url, headers=headers, timeout=self.settings.fetch_timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise ResolutionError(f"fetch failed for {url[:80]}: {e}") from e
        return response.text

    def _run(self, sandbox, body, label):
        if not body.strip():
            return
        try:
            sandbox.execute(body)
        except ScriptTimeout as e:
            logger.warning(f"Script {label[:80]} aborted: {e}")
        except ScriptError as e:
            # page scripts routinely throw on missing browser APIs; later scripts still run
            logger.debug(f"Script {label[:80]} raised: {e}")

    @staticmethod
    def collect_scripts(html, base_url):
        """Return (external script URLs, inline script bodies) in document order."""
        soup = BeautifulSoup(html, 'html.parser')
        external, inline = [], []
        for tag in soup.find_all('script'):
            script_type = (tag.get('type') or '').strip().lower()
            if script_type not in JS_SCRIPT_TYPES:
                continue
            src = (tag.get('src') or '').strip()
            if src:
                external.append(urljoin(base_url, src))
                continue
            body = tag.string if tag.string is not None else tag.get_text()
            if body and body.strip():
                inline.append(body)
        return external, inline

    def parse_evaluations(self, evaluations):
        for code in evaluations:
            for match in CONFIG_LITERAL.finditer(code):
                config = self._parse_literal(match.group(1))
                descriptor = descriptor_from_config(config)
                if descriptor is not None:
                    return descriptor
        return None

    def _parse_literal(self, literal):
        try:
            return json.loads(literal.replace('\\/', '/'))
        except ValueError:
            pass
        try:
            return ScriptSandbox(timeout=self.settings.eval_timeout).evaluate_literal(literal)
        except (ScriptError, ScriptTimeout) as e:
            logger.debug(f"Config literal parse error: {e}")
            return None
