import os
import logging
from dataclasses import dataclass, field

from dotenv import load_dotenv

DEFAULT_USER_AGENT = 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36'

# JWPlayer and generic player controls, tried in order
DEFAULT_PLAY_SELECTORS = (
    '.jw-icon-display',
    '.jw-display-icon-container',
    '.jw-video',
    'video',
    '.jw-controls .jw-icon-playback',
    '.jw-poster',
    '.play-button',
    '#player',
)


def _env_int(name, default):
    raw = os.environ.get(name, '').strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logging.getLogger(__name__).warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default


def _env_float(name, default):
    raw = os.environ.get(name, '').strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logging.getLogger(__name__).warning(f"Ignoring non-numeric {name}={raw!r}, using {default}")
        return default


def _env_bool(name, default):
    raw = os.environ.get(name, '').strip().lower()
    if not raw:
        return default
    return raw in ('1', 'true', 'yes', 'on')


@dataclass
class Settings:
    redis_url: str = ''
    cache_ttl: int = 3600
    session_ttl: int = 15 * 60
    sweep_interval: int = 5 * 60
    navigation_timeout: int = 30
    capture_timeout: int = 15
    play_retry_timeout: int = 10
    relay_acquire_timeout: float = 5.0
    relay_fetch_timeout: float = 20.0
    script_timeout: float = 10.0
    eval_timeout: float = 5.0
    fetch_timeout: float = 20.0
    max_script_bytes: int = 400000
    user_agent: str = DEFAULT_USER_AGENT
    embed_referer: str = 'https://rebahinxxi3.work/'
    manifest_url_pattern: str = r'groovy\.monster/.*?/stream/'
    play_selectors: tuple = field(default=DEFAULT_PLAY_SELECTORS)
    decoder_name: str = '_juicycodes'
    headless: bool = True
    host: str = '0.0.0.0'
    port: int = 7860
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls):
        """Build settings from the process environment (and a .env file if present)."""
        load_dotenv()
        defaults = cls()
        selectors = os.environ.get('PLAY_SELECTORS', '').strip()
        return cls(
            redis_url=os.environ.get('REDIS_URL', defaults.redis_url).strip(),
            cache_ttl=_env_int('SCRAPE_CACHE_TTL', defaults.cache_ttl),
            session_ttl=_env_int('SESSION_TTL', defaults.session_ttl),
            sweep_interval=_env_int('SESSION_SWEEP_INTERVAL', defaults.sweep_interval),
            navigation_timeout=_env_int('NAVIGATION_TIMEOUT', defaults.navigation_timeout),
            capture_timeout=_env_int('CAPTURE_TIMEOUT', defaults.capture_timeout),
            play_retry_timeout=_env_int('PLAY_RETRY_TIMEOUT', defaults.play_retry_timeout),
            relay_acquire_timeout=_env_float('RELAY_ACQUIRE_TIMEOUT', defaults.relay_acquire_timeout),
            relay_fetch_timeout=_env_float('RELAY_FETCH_TIMEOUT', defaults.relay_fetch_timeout),
            script_timeout=_env_float('SCRIPT_TIMEOUT', defaults.script_timeout),
            eval_timeout=_env_float('EVAL_TIMEOUT', defaults.eval_timeout),
            fetch_timeout=_env_float('FETCH_TIMEOUT', defaults.fetch_timeout),
            max_script_bytes=_env_int('MAX_SCRIPT_BYTES', defaults.max_script_bytes),
            user_agent=os.environ.get('USER_AGENT', defaults.user_agent),
            embed_referer=os.environ.get('EMBED_REFERER', defaults.embed_referer),
            manifest_url_pattern=os.environ.get('MANIFEST_URL_PATTERN', defaults.manifest_url_pattern),
            play_selectors=tuple(s.strip() for s in selectors.split(',') if s.strip()) if selectors else defaults.play_selectors,
            decoder_name=os.environ.get('SANDBOX_DECODER', defaults.decoder_name).strip(),
            headless=_env_bool('BROWSER_HEADLESS', defaults.headless),
            host=os.environ.get('HOST', defaults.host),
            port=_env_int('PORT', defaults.port),
            log_level=os.environ.get('LOG_LEVEL', defaults.log_level).upper(),
        )


def configure_logging(level='INFO'):
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format='%(asctime)s - %(levelname)s - %(message)s')
