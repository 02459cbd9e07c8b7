"""JSON key/value cache: redis first, in-process dictionary as fallback."""
import json
import time
import logging
import threading

import redis

logger = logging.getLogger(__name__)


class Cache:
    def __init__(self, client=None, default_ttl=3600, clock=time.time):
        self._client = client
        self._default_ttl = default_ttl
        self._clock = clock
        self._local = {}
        self._lock = threading.Lock()

    @classmethod
    def from_url(cls, redis_url, default_ttl=3600):
        """Connect to redis at redis_url; an empty url or failed ping gives a local-only cache."""
        if not redis_url:
            logger.info("No REDIS_URL configured, running with in-memory cache only")
            return cls(None, default_ttl)
        client = redis.Redis.from_url(redis_url, socket_connect_timeout=2, socket_timeout=2, retry_on_timeout=False)
        try:
            client.ping()
            logger.info("Redis connected successfully")
        except redis.RedisError as e:
            # keep the client: reads and writes retry it and fall back per call
            logger.warning(f"Redis connection failed, using in-memory cache until it recovers: {e}")
        return cls(client, default_ttl)

    def get(self, key):
        if self._client is not None:
            try:
                raw = self._client.get(key)
                if raw is not None:
                    return json.loads(raw)
            except redis.RedisError as e:
                logger.debug(f"Redis get failed for {key}: {e}")
            except ValueError:
                logger.warning(f"Discarding undecodable cache entry {key}")

        with self._lock:
            entry = self._local.get(key)
            if entry is None:
                return None
            data, expiry = entry
            if expiry <= self._clock():
                del self._local[key]
                return None
        return json.loads(data)

    def set(self, key, value, ttl=None):
        ttl = ttl or self._default_ttl
        data = json.dumps(value)
        if self._client is not None:
            try:
                self._client.setex(key, ttl, data)
            except redis.RedisError as e:
                logger.warning(f"Redis set error for {key}: {e}")
        with self._lock:
            self._local[key] = (data, self._clock() + ttl)

    def delete(self, key):
        if self._client is not None:
            try:
                self._client.delete(key)
            except redis.RedisError as e:
                logger.warning(f"Redis del error for {key}: {e}")
        with self._lock:
            self._local.pop(key, None)

    def clear(self, prefix=''):
        """Drop every entry whose key starts with prefix. Returns the number of local entries removed."""
        if self._client is not None:
            try:
                keys = list(self._client.scan_iter(match=f"{prefix}*"))
                if keys:
                    self._client.delete(*keys)
            except redis.RedisError as e:
                logger.warning(f"Redis clear error for prefix {prefix!r}: {e}")
        with self._lock:
            doomed = [k for k in self._local if k.startswith(prefix)]
            for k in doomed:
                del self._local[k]
        return len(doomed)

    def status(self):
        if self._client is None:
            return 'disabled'
        try:
            self._client.ping()
            return 'connected'
        except redis.RedisError:
            return 'disconnected'
