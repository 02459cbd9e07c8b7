from embedrelay.config import DEFAULT_PLAY_SELECTORS, Settings


def test_defaults(monkeypatch):
    for name in ('REDIS_URL', 'SESSION_TTL', 'PLAY_SELECTORS', 'BROWSER_HEADLESS', 'PORT', 'LOG_LEVEL'):
        monkeypatch.delenv(name, raising=False)
    settings = Settings.from_env()
    assert settings.redis_url == ''
    assert settings.session_ttl == 900
    assert settings.play_selectors == DEFAULT_PLAY_SELECTORS
    assert settings.headless is True
    assert settings.port == 7860


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv('REDIS_URL', 'redis://cache:6379/0')
    monkeypatch.setenv('SESSION_TTL', '60')
    monkeypatch.setenv('PLAY_SELECTORS', '.play, video ,')
    monkeypatch.setenv('BROWSER_HEADLESS', 'false')
    monkeypatch.setenv('PORT', 'not-a-number')
    monkeypatch.setenv('LOG_LEVEL', 'debug')
    settings = Settings.from_env()
    assert settings.redis_url == 'redis://cache:6379/0'
    assert settings.session_ttl == 60
    assert settings.play_selectors == ('.play', 'video')
    assert settings.headless is False
    assert settings.port == 7860
    assert settings.log_level == 'DEBUG'


def test_fractional_timeouts(monkeypatch):
    monkeypatch.setenv('RELAY_ACQUIRE_TIMEOUT', '2.5')
    monkeypatch.setenv('SCRIPT_TIMEOUT', '0.75')
    monkeypatch.setenv('FETCH_TIMEOUT', 'soon')
    settings = Settings.from_env()
    assert settings.relay_acquire_timeout == 2.5
    assert settings.script_timeout == 0.75
    assert settings.fetch_timeout == 20.0
