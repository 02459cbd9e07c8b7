import json
import base64
import atexit
import binascii
import logging
from urllib.parse import quote

from flask import Flask, request, Response, jsonify, redirect

from .browser import PlaywrightDriver
from .cache import Cache
from .config import Settings
from .errors import CreationError, RelayError, ResolutionError
from .manager import BrowserSessionManager
from .manifest import is_manifest, rewrite
from .relay import SegmentRelay
from .resolver import SandboxResolver
from .sessions import SessionRegistry, source_key

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Headers': '*',
}

PLAYER_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>Loading...</title>
  <script src="https://cdn.jsdelivr.net/npm/hls.js@1.5.7"></script>
  <style>
    * { margin: 0; padding: 0; box-sizing: border-box; }
    html, body { width: 100%; height: 100%; background: #000; overflow: hidden; }
    video { width: 100%; height: 100%; object-fit: contain; }
    .status { display: flex; align-items: center; justify-content: center; height: 100%;
              color: #999; font-family: system-ui; font-size: 16px; }
    .error { color: #ef4444; }
  </style>
</head>
<body>
  <div id="status" class="status">Loading stream...</div>
  <video id="video" controls style="display:none"></video>
  <script>
    (function() {
      var video = document.getElementById('video');
      var status = document.getElementById('status');
      var streamUrl = __STREAM_URL__;

      function showError(msg) {
        status.className = 'status error';
        status.textContent = msg;
      }

      function ready() {
        status.style.display = 'none';
        video.style.display = 'block';
        video.play().catch(function() {});
      }

      if (window.Hls && Hls.isSupported()) {
        var hls = new Hls({ enableWorker: true });
        hls.on(Hls.Events.MANIFEST_PARSED, ready);
        hls.on(Hls.Events.ERROR, function(event, data) {
          if (data.fatal) {
            showError(data.type === Hls.ErrorTypes.NETWORK_ERROR ? 'Failed to load stream. Try refreshing the page.' : 'Error: ' + (data.details || 'unknown'));
          }
        });
        hls.loadSource(streamUrl);
        hls.attachMedia(video);
      } else if (video.canPlayType('application/vnd.apple.mpegurl')) {
        video.src = streamUrl;
        video.addEventListener('loadedmetadata', ready);
      } else {
        showError('This browser cannot play HLS streams');
      }
    })();
  </script>
</body>
</html>
"""


def decode_embed_param(value):
    """Decode a base64 (standard or URL-safe, padding optional) embed URL parameter.

    Returns None when the value is missing or does not decode to an http(s) URL.
    """
    value = (value or '').strip()
    if not value:
        return None
    if value.startswith(('http://', 'https://')):
        return value
    padded = value + '=' * (-len(value) % 4)
    try:
        decoded = base64.b64decode(padded.replace('-', '+').replace('_', '/'), validate=True).decode('utf-8').strip()
    except (binascii.Error, ValueError):
        return None
    if not decoded.startswith(('http://', 'https://')):
        return None
    return decoded


def encode_embed_param(embed_url):
    return base64.urlsafe_b64encode(embed_url.encode('utf-8')).decode('ascii').rstrip('=')


def error_json(message, status, no_cache=False):
    response = jsonify({'success': False, 'error': message})
    response.status_code = status
    response.headers.update(CORS_HEADERS)
    if no_cache:
        response.headers['Cache-Control'] = 'no-cache'
    return response


def create_app(settings=None, cache=None, resolver=None, driver=None, registry=None, manager=None, relay=None, start_sweeper=True):
    """Build the Flask application; any component left as None is built from settings."""
    settings = settings or Settings.from_env()
    cache = cache if cache is not None else Cache.from_url(settings.redis_url, settings.cache_ttl)
    resolver = resolver or SandboxResolver(cache, settings)
    if driver is None:
        driver = registry.driver if registry is not None else PlaywrightDriver(headless=settings.headless)
    registry = registry or SessionRegistry(driver, ttl=settings.session_ttl, sweep_interval=settings.sweep_interval)
    manager = manager or BrowserSessionManager(driver, settings)
    relay = relay or SegmentRelay(
        registry,
        driver,
        manager=manager,
        acquire_timeout=settings.relay_acquire_timeout,
        fetch_timeout=settings.relay_fetch_timeout,
    )

    app = Flask(__name__)
    app.config['SETTINGS'] = settings
    app.extensions['embedrelay'] = {
        'cache': cache,
        'resolver': resolver,
        'registry': registry,
        'manager': manager,
        'relay': relay,
    }

    if start_sweeper:
        registry.start()

        def shutdown():
            logger.info("Shutting down browser sessions")
            registry.close_all()
            driver.shutdown()

        atexit.register(shutdown)

    @app.route('/')
    def index():
        logger.info(f"Main page access from {request.remote_addr} - User-Agent: {request.headers.get('User-Agent', 'Unknown')}")
        return "Stream relay started!"

    @app.route('/health')
    def health():
        return jsonify({
            'status': 'ok',
            'cache': cache.status(),
            'sessions': len(registry),
        })

    @app.route('/cache/clear', methods=['POST'])
    def cache_clear():
        """Drop cached stream descriptors (or any keys under the given prefix)."""
        prefix = request.args.get('prefix', 'stream:')
        removed = cache.clear(prefix)
        logger.info(f"Cache cleared for prefix {prefix!r}")
        return jsonify({'success': True, 'removed': removed})

    @app.route('/stream')
    def stream():
        """Resolve an embed page in the script sandbox and return its stream descriptor."""
        embed_url = decode_embed_param(request.args.get('url'))
        if not embed_url:
            return error_json('URL parameter is required (base64-encoded embed URL)', 400)
        try:
            descriptor = resolver.resolve(embed_url)
        except ResolutionError as e:
            logger.error(f"Could not extract stream from {embed_url[:80]}: {e}")
            return error_json('Could not extract stream URL', 404)
        except Exception as e:
            logger.exception(f"Error extracting stream: {e}")
            return error_json('Failed to extract stream', 500)
        response = jsonify({'success': True, 'data': descriptor.to_dict()})
        response.headers.update(CORS_HEADERS)
        return response

    @app.route('/embed')
    def embed():
        """Minimal hls.js player page pointed at /hls-stream."""
        embed_url = decode_embed_param(request.args.get('url'))
        if not embed_url:
            return error_json('URL parameter is required (base64-encoded embed URL)', 400)
        stream_url = f"{request.host_url.rstrip('/')}/hls-stream?url={quote(encode_embed_param(embed_url))}"
        html = PLAYER_PAGE.replace('__STREAM_URL__', json.dumps(stream_url))
        return Response(html, content_type='text/html; charset=utf-8', headers={**CORS_HEADERS, 'Cache-Control': 'no-cache'})

    def proxy_base_url():
        return f"{request.host_url.rstrip('/')}/stream-proxy"

    @app.route('/hls-stream')
    def hls_stream():
        """Serve the manifest captured by the source's browser session, rewritten through /stream-proxy."""
        embed_url = decode_embed_param(request.args.get('url'))
        if not embed_url:
            return error_json('URL parameter is required (base64-encoded embed URL)', 400, no_cache=True)
        key = source_key(embed_url)
        try:
            session = registry.get_or_create(key, lambda: manager.create_session(embed_url))
        except CreationError as e:
            logger.error(f"Failed to extract stream for {embed_url[:80]}: {e}")
            return error_json('Failed to extract stream', 502, no_cache=True)
        except Exception as e:
            logger.exception(f"Stream extraction error: {e}")
            return error_json('Stream extraction failed', 500, no_cache=True)

        body = rewrite(
            session.manifest_body,
            proxy_base_url(),
            manifest_url=session.manifest_url,
            extra_params={'src': encode_embed_param(embed_url)},
        )
        headers = {**CORS_HEADERS, 'Cache-Control': 'no-cache'}
        return Response(body, content_type='application/vnd.apple.mpegurl', headers=headers)

    @app.route('/stream-proxy', methods=['GET', 'OPTIONS'])
    def stream_proxy():
        """Relay a segment request through the owning session's browser tab."""
        if request.method == 'OPTIONS':
            return Response('', status=204, headers={
                **CORS_HEADERS,
                'Access-Control-Allow-Methods': 'GET, OPTIONS',
                'Access-Control-Max-Age': '86400',
            })

        target_url = request.args.get('url', '').strip()
        if not target_url:
            return Response('Missing url parameter', status=400, headers=CORS_HEADERS)
        embed_url = decode_embed_param(request.args.get('src'))
        range_header = request.headers.get('Range')

        try:
            result = relay.fetch_segment(target_url, range_header, embed_url=embed_url)
        except RelayError as e:
            logger.error(f"Stream proxy error ({e.kind}) for {target_url[:80]}: {e}")
            return Response(f"Failed to fetch stream resource: {e.kind}", status=502, headers=CORS_HEADERS)
        except Exception as e:
            logger.exception(f"Stream proxy error: {e}")
            return Response('Proxy error', status=502, headers=CORS_HEADERS)

        headers = {
            'Access-Control-Allow-Origin': '*',
            'Access-Control-Expose-Headers': '*',
            'Accept-Ranges': 'bytes',
        }

        # variant and rendition playlists must route their segments back through here too
        if is_manifest(result.body[:1024].decode('utf-8', 'ignore')):
            extra_params = {'src': encode_embed_param(embed_url)} if embed_url else None
            body = rewrite(result.body.decode('utf-8', 'replace'), proxy_base_url(), manifest_url=target_url, extra_params=extra_params)
            headers['Cache-Control'] = 'no-cache'
            return Response(body, status=result.status, content_type='application/vnd.apple.mpegurl', headers=headers)

        if result.headers.get('content-range'):
            headers['Content-Range'] = result.headers['content-range']
        # fetch() hands back decoded bytes, so a compressed upstream length would not match
        if result.headers.get('content-length') == str(len(result.body)):
            headers['Content-Length'] = result.headers['content-length']
        return Response(result.body, status=result.status, content_type=result.headers.get('content-type') or result.content_type, headers=headers)

    @app.route('/cors-proxy', methods=['GET', 'POST', 'OPTIONS'])
    def cors_proxy():
        """Legacy alias kept for old player builds; redirects to /stream-proxy."""
        if request.method == 'OPTIONS':
            return Response('', status=204, headers={
                **CORS_HEADERS,
                'Access-Control-Allow-Methods': 'GET, POST, OPTIONS',
                'Access-Control-Max-Age': '86400',
            })
        target_url = request.args.get('url', '').strip()
        if not target_url:
            return Response('Missing url parameter', status=400, headers=CORS_HEADERS)
        location = f"/stream-proxy?url={quote(target_url, safe='')}"
        if request.args.get('src'):
            location += f"&src={quote(request.args['src'], safe='')}"
        return redirect(location)

    return app
