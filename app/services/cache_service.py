"""
Redis cache for storefront read paths.

Entries live under {prefix}:{namespace}:{key} with a TTL. Money values keep their
Decimal precision through the JSON codec. When Redis is disabled or unreachable
every call degrades to a miss so requests fall through to the database.
"""

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from functools import wraps
from typing import Any, Callable, Optional

import redis
from redis.exceptions import RedisError
from flask import Flask, current_app, jsonify, request

logger = logging.getLogger(__name__)

DECIMAL_TAG = '__decimal__'
INVALIDATE_BATCH = 200


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return {DECIMAL_TAG: str(obj)}
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    raise TypeError(f"Cannot cache value of type {type(obj).__name__}")


def _json_object_hook(obj: dict) -> Any:
    if DECIMAL_TAG in obj and len(obj) == 1:
        return Decimal(obj[DECIMAL_TAG])
    return obj


def encode_value(value: Any) -> str:
    return json.dumps(value, default=_json_default)


def decode_value(raw: str) -> Any:
    return json.loads(raw, object_hook=_json_object_hook)


class CacheService:
    """Thin Redis wrapper used by the promotion listing and the order stats."""

    def __init__(self, app: Optional[Flask] = None):
        self.client: Optional[redis.Redis] = None
        self.enabled = False
        self.prefix = 'store'
        if app is not None:
            self.init_app(app)

    def init_app(self, app: Flask) -> None:
        self.enabled = bool(app.config.get('CACHE_ENABLED', True))
        self.prefix = app.config.get('CACHE_KEY_PREFIX', 'store')
        if not self.enabled:
            logger.info("[CACHE] Disabled by configuration")
            return

        url = app.config.get('REDIS_URL', 'redis://localhost:6379/0')
        try:
            self.client = redis.from_url(
                url,
                decode_responses=True,
                socket_connect_timeout=3,
                socket_timeout=3,
                retry_on_timeout=True,
                health_check_interval=30
            )
            self.client.ping()
            logger.info(f"[CACHE] Connected to {url}")
        except RedisError as e:
            logger.warning(f"[CACHE] Redis unavailable ({e}); running without cache")
            self.enabled = False
            self.client = None

    def key_for(self, namespace: str, key: str) -> str:
        return f"{self.prefix}:{namespace}:{key}"

    def is_available(self) -> bool:
        if not self.enabled or self.client is None:
            return False
        try:
            return bool(self.client.ping())
        except RedisError:
            return False

    def get(self, namespace: str, key: str) -> Optional[Any]:
        if not self.enabled or self.client is None:
            return None
        try:
            raw = self.client.get(self.key_for(namespace, key))
        except RedisError as e:
            logger.warning(f"[CACHE] Read failed for {namespace}:{key}: {e}")
            return None
        if raw is None:
            return None
        try:
            return decode_value(raw)
        except ValueError:
            logger.warning(f"[CACHE] Discarding undecodable entry {namespace}:{key}")
            return None

    def set(self, namespace: str, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if not self.enabled or self.client is None:
            return False
        ttl = ttl or current_app.config.get('CACHE_DEFAULT_TTL', 60)
        try:
            self.client.setex(self.key_for(namespace, key), int(ttl), encode_value(value))
            return True
        except (RedisError, TypeError) as e:
            logger.warning(f"[CACHE] Write failed for {namespace}:{key}: {e}")
            return False

    def delete(self, namespace: str, key: str) -> bool:
        if not self.enabled or self.client is None:
            return False
        try:
            return bool(self.client.delete(self.key_for(namespace, key)))
        except RedisError as e:
            logger.warning(f"[CACHE] Delete failed for {namespace}:{key}: {e}")
            return False

    def invalidate(self, namespace: str) -> int:
        """Drop every entry of a namespace; returns the number of keys removed."""
        if not self.enabled or self.client is None:
            return 0
        removed = 0
        batch = []
        try:
            for cache_key in self.client.scan_iter(match=self.key_for(namespace, '*'), count=INVALIDATE_BATCH):
                batch.append(cache_key)
                if len(batch) >= INVALIDATE_BATCH:
                    removed += self.client.delete(*batch)
                    batch = []
            if batch:
                removed += self.client.delete(*batch)
        except RedisError as e:
            logger.warning(f"[CACHE] Invalidation of {namespace} failed: {e}")
        if removed:
            logger.info(f"[CACHE] Invalidated {removed} key(s) in {namespace}")
        return removed

    def get_or_load(self, namespace: str, key: str, loader: Callable[[], Any], ttl: Optional[int] = None) -> Any:
        """Cache-aside read: return the cached value or compute, store and return it."""
        cached = self.get(namespace, key)
        if cached is not None:
            return cached
        value = loader()
        self.set(namespace, key, value, ttl)
        return value


_cache: Optional[CacheService] = None


def init_cache(app: Flask) -> CacheService:
    global _cache
    _cache = CacheService(app)
    app.extensions['cache'] = _cache
    return _cache


def get_cache() -> CacheService:
    if _cache is None:
        raise RuntimeError("Cache not initialized.")
    return _cache


def cached_response(namespace: str, ttl_config_key: str = 'CACHE_DEFAULT_TTL'):
    """
    Cache the JSON body of a successful GET view, keyed by path and query string.

    Writes to the underlying data must call get_cache().invalidate(namespace).
    """
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            cache = get_cache()
            key = request.full_path
            hit = cache.get(namespace, key)
            if hit is not None:
                return jsonify(hit), 200

            rv = view(*args, **kwargs)
            response, status = (rv[0], rv[1]) if isinstance(rv, tuple) else (rv, 200)
            if status == 200 and response.is_json:
                cache.set(namespace, key, response.get_json(), current_app.config.get(ttl_config_key))
            return rv
        return wrapper
    return decorator
