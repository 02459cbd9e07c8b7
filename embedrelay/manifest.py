import re
from urllib.parse import quote, urljoin, urlencode

ABSOLUTE_URL = re.compile(r'^https?://\S+$', re.IGNORECASE)
OTHER_SCHEME = re.compile(r"^[a-z][a-z0-9+.-]*:", re.IGNORECASE)
URI_ATTRIBUTE = re.compile(r'URI="([^"]+)"')


def is_manifest(body):
    return bool(body) and body.lstrip('\ufeff \t\r\n').startswith('#EXTM3U')


def proxy_url(target_url, proxy_base_url, extra_params=None):
    url = f"{proxy_base_url}?url={quote(target_url, safe='')}"
    if extra_params:
        url += '&' + urlencode(extra_params)
    return url


def rewrite(body, proxy_base_url, manifest_url=None, extra_params=None):
    """Route every segment, key and init-section URI in an HLS playlist through proxy_base_url.

    Absolute URI lines are wrapped as ``proxy_base_url?url=<percent-encoded>``.
    Relative URI lines are resolved against manifest_url first, and left as
    they are when it is not known. Lines already pointing at the proxy are
    untouched, so rewriting twice gives the same text as rewriting once.
    ``URI="..."`` attributes on tag lines (keys, init sections, renditions)
    are proxied the same way.
    """
    prefix = f"{proxy_base_url}?"

    def wrap(uri):
        if uri.startswith(prefix):
            return uri
        if not ABSOLUTE_URL.match(uri):
            if not manifest_url or OTHER_SCHEME.match(uri):
                return uri
            uri = urljoin(manifest_url, uri)
        return proxy_url(uri, proxy_base_url, extra_params)

    lines = []
    for line in body.splitlines():
        stripped = line.strip()
        if stripped.startswith('#EXT') and 'URI="' in stripped:
            line = URI_ATTRIBUTE.sub(lambda m: f'URI="{wrap(m.group(1))}"', line)
        elif stripped and not stripped.startswith('#'):
            line = wrap(stripped)
        lines.append(line)

    rewritten = '\n'.join(lines)
    if body.endswith('\n'):
        rewritten += '\n'
    return rewritten
