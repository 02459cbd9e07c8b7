import json
import base64

import pytest
import requests

from embedrelay.cache import Cache
from embedrelay.errors import ResolutionError, ScriptTimeout
from embedrelay.resolver import SandboxResolver, StreamDescriptor, cache_key, descriptor_from_config, guess_stream_type
from embedrelay.sandbox import ScriptSandbox

from conftest import EMBED_URL

MEDIA_URL = 'https://cdn.example.com/hls/abc/stream/master.m3u8'
CONFIG = 'var config = {"sources":{"file":"%s","type":"hls"},"image":"https://img.example.com/poster.jpg"};' % MEDIA_URL
# the page ships the config reversed and base64-encoded
PAYLOAD = base64.b64encode(CONFIG[::-1].encode()).decode()

DECODER_JS = '''
function decode(payload) {
    var text = atob(payload).split('').reverse().join('');
    eval(text);
}
'''

EMBED_PAGE = '''<html><head>
<script type="application/ld+json">{"@type": "VideoObject"}</script>
<script src="/assets/player.js"></script>
</head><body>
<div id="player"></div>
<script>decode("%s");</script>
</body></html>''' % PAYLOAD


class FakeResponse:
    def __init__(self, text, status=200):
        self.text = text
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeHttp:
    def __init__(self, pages):
        self.pages = pages
        self.headers = {}
        self.requests = []

    def get(self, url, headers=None, timeout=None):
        self.requests.append((url, headers))
        page = self.pages.get(url)
        if page is None:
            raise requests.ConnectionError(f"no route to {url}")
        if isinstance(page, FakeResponse):
            return page
        return FakeResponse(page)


def pages(**overrides):
    site = {
        EMBED_URL: EMBED_PAGE,
        'https://embed.example.org/assets/player.js': DECODER_JS,
    }
    site.update(overrides)
    return site


def test_sandbox_records_eval_strings():
    sandbox = ScriptSandbox('https://embed.example.org/e/1')
    recorded = sandbox.execute('var x = "var y = 1;"; eval(x);')
    assert recorded == ['var y = 1;']
    assert sandbox.evaluations == ['var y = 1;']


def test_sandbox_exposes_location_and_atob():
    sandbox = ScriptSandbox('https://embed.example.org/e/1?x=2')
    sandbox.execute('eval("var host = \'" + location.hostname + "\';");')
    sandbox.execute('eval(atob("aGVsbG8="));')
    assert sandbox.evaluations == ["var host = 'embed.example.org';", 'hello']


def test_sandbox_runs_timer_callbacks_once():
    sandbox = ScriptSandbox()
    sandbox.execute('setTimeout(function () { eval("var fromTimer = 1;"); }, 1000);')
    assert sandbox.evaluations == ['var fromTimer = 1;']


def test_sandbox_is_function():
    sandbox = ScriptSandbox()
    sandbox.execute(DECODER_JS)
    assert sandbox.is_function('decode')
    assert not sandbox.is_function('missing')
    assert not sandbox.is_function('decode; alert(1)')


def test_sandbox_enforces_time_budget():
    sandbox = ScriptSandbox(timeout=0.3)
    with pytest.raises(ScriptTimeout):
        sandbox.execute('var i = 0; while (true) { i++; }')


def test_evaluate_literal_accepts_javascript_object_syntax():
    sandbox = ScriptSandbox()
    value = sandbox.evaluate_literal("{sources: [{file: 'https://cdn.example.com/a.m3u8', label: '720p'}], autostart: true}")
    assert value == {'sources': [{'file': 'https://cdn.example.com/a.m3u8', 'label': '720p'}], 'autostart': True}


def test_resolve_recovers_media_url(settings):
    http = FakeHttp(pages())
    resolver = SandboxResolver(Cache(None), settings, http=http)
    descriptor = resolver.resolve(EMBED_URL)

    assert descriptor.file == MEDIA_URL
    assert descriptor.type == 'hls'
    assert descriptor.image == 'https://img.example.com/poster.jpg'
    assert http.requests[0] == (EMBED_URL, {'Referer': resolver.settings.embed_referer})
    assert http.requests[1] == ('https://embed.example.org/assets/player.js', {'Referer': EMBED_URL})
    assert 'User-Agent' in http.headers


def test_resolve_uses_cache(settings):
    cache = Cache(None)
    http = FakeHttp(pages())
    resolver = SandboxResolver(cache, settings, http=http)
    first = resolver.resolve(EMBED_URL)
    count = len(http.requests)
    assert resolver.resolve(EMBED_URL) == first
    assert len(http.requests) == count
    assert cache.get(cache_key(EMBED_URL))['file'] == MEDIA_URL


def test_cached_descriptor_short_circuits_fetching(settings):
    cache = Cache(None)
    cache.set(cache_key(EMBED_URL), {'file': 'https://cached.example.com/x.m3u8', 'type': 'hls'})
    http = FakeHttp({})
    descriptor = SandboxResolver(cache, settings, http=http).resolve(EMBED_URL)
    assert descriptor.file == 'https://cached.example.com/x.m3u8'
    assert http.requests == []


def test_missing_decoder_fails(settings):
    http = FakeHttp(pages(**{'https://embed.example.org/assets/player.js': 'var unrelated = 1;'}))
    with pytest.raises(ResolutionError):
        SandboxResolver(Cache(None), settings, http=http).resolve(EMBED_URL)


def test_unreachable_external_script_is_skipped_then_decoder_missing(settings):
    site = pages()
    del site['https://embed.example.org/assets/player.js']
    with pytest.raises(ResolutionError, match='decode'):
        SandboxResolver(Cache(None), settings, http=FakeHttp(site)).resolve(EMBED_URL)


def test_decoder_producing_no_config_fails(settings):
    page = EMBED_PAGE.replace(PAYLOAD, base64.b64encode(b';1 = x rav').decode())
    http = FakeHttp(pages(**{EMBED_URL: page}))
    with pytest.raises(ResolutionError):
        SandboxResolver(Cache(None), settings, http=http).resolve(EMBED_URL)


def test_embed_page_fetch_failure(settings):
    http = FakeHttp({EMBED_URL: FakeResponse('gone', status=404)})
    with pytest.raises(ResolutionError):
        SandboxResolver(Cache(None), settings, http=http).resolve(EMBED_URL)


def test_throwing_inline_script_does_not_stop_later_ones(settings):
    page = EMBED_PAGE.replace('<div id="player"></div>', '<script>undefinedFunction();</script>')
    http = FakeHttp(pages(**{EMBED_URL: page}))
    descriptor = SandboxResolver(Cache(None), settings, http=http).resolve(EMBED_URL)
    assert descriptor.file == MEDIA_URL


def test_collect_scripts_skips_data_blocks():
    external, inline = SandboxResolver.collect_scripts(EMBED_PAGE, EMBED_URL)
    assert external == ['https://embed.example.org/assets/player.js']
    assert len(inline) == 1
    assert inline[0].startswith('decode(')


def test_parse_evaluations_falls_back_to_sandbox_for_js_literals(settings):
    resolver = SandboxResolver(Cache(None), settings, http=FakeHttp({}))
    descriptor = resolver.parse_evaluations([
        'var noise = 1;',
        "var player = {sources: [{file: 'https://cdn.example.com/720.mp4', label: '720p'}, {file: 'https://cdn.example.com/480.mp4', label: '480p'}]};",
    ])
    assert descriptor.file == 'https://cdn.example.com/720.mp4'
    assert descriptor.type == 'mp4'
    assert descriptor.labels == {'720p': 'https://cdn.example.com/720.mp4', '480p': 'https://cdn.example.com/480.mp4'}


def test_descriptor_from_config_variants():
    assert descriptor_from_config({'file': 'https://x.example/a.mpd'}).type == 'dash'
    assert descriptor_from_config({'sources': []}) is None
    assert descriptor_from_config('not a dict') is None
    escaped = json.loads('{"sources": {"file": "https:\\/\\/x.example\\/a.m3u8"}}')
    assert descriptor_from_config(escaped).file == 'https://x.example/a.m3u8'


def test_guess_stream_type():
    assert guess_stream_type('https://x.example/v.mp4?token=1') == 'mp4'
    assert guess_stream_type('https://x.example/master') == 'hls'


def test_descriptor_dict_roundtrip():
    descriptor = StreamDescriptor(file='https://x.example/a.m3u8', labels={'hd': 'https://x.example/hd.m3u8'})
    assert StreamDescriptor.from_dict(descriptor.to_dict()) == descriptor
    assert 'image' not in descriptor.to_dict()
