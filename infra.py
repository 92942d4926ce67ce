from __future__ import annotations

import json
import logging
import os
import sys
from typing import Any, List, Optional

import redis
from pythonjsonlogger import jsonlogger

log = logging.getLogger("dbexplorer.infra")

_redis_client: Optional[redis.Redis] = None
_redis_url: str = ""


def get_redis() -> Optional[redis.Redis]:
    """Shared Redis client, or None when REDIS_URL is unset or unreachable."""
    global _redis_client, _redis_url

    url = os.getenv("REDIS_URL", "").strip()
    if not url:
        return None
    if _redis_client is not None and url == _redis_url:
        return _redis_client

    connect_timeout = int(os.getenv("REDIS_CONNECT_TIMEOUT", "10"))

    try:
        r = redis.Redis.from_url(
            url,
            socket_connect_timeout=connect_timeout,
            socket_timeout=None,          # RQ blocking ops need no read timeout
            health_check_interval=30,
            retry_on_timeout=True,
            decode_responses=True,
        )
        r.ping()
    except redis.RedisError as e:
        log.warning("redis_unavailable", extra={"error": str(e)})
        return None

    _redis_client = r
    _redis_url = url
    return r


def redis_prefix() -> str:
    return (os.getenv("REDIS_PREFIX") or "dbexplorer:").strip()


def rkey(key: str) -> str:
    return f"{redis_prefix()}{key}"


def rget_json(key: str) -> Optional[Any]:
    r = get_redis()
    if not r:
        return None
    try:
        raw = r.get(rkey(key))
        if not raw:
            return None
        return json.loads(raw)
    except (redis.RedisError, ValueError):
        return None


def rset_json(key: str, value: Any, ttl_s: int) -> bool:
    r = get_redis()
    if not r:
        return False
    try:
        raw = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        if ttl_s > 0:
            r.setex(rkey(key), ttl_s, raw)
        else:
            r.set(rkey(key), raw)
        return True
    except redis.RedisError:
        return False


def rpush_json(key: str, value: Any, ttl_s: int) -> bool:
    """Append one JSON item to a Redis list and refresh its TTL."""
    r = get_redis()
    if not r:
        return False
    try:
        raw = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        pipe = r.pipeline()
        pipe.rpush(rkey(key), raw)
        if ttl_s > 0:
            pipe.expire(rkey(key), ttl_s)
        pipe.execute()
        return True
    except redis.RedisError:
        return False


def rtail_json(key: str, count: int) -> List[Any]:
    """Last ``count`` items of a Redis list, oldest first."""
    r = get_redis()
    if not r or count <= 0:
        return []
    try:
        raws = r.lrange(rkey(key), -count, -1)
    except redis.RedisError:
        return []
    out = []
    for raw in raws:
        try:
            out.append(json.loads(raw))
        except ValueError:
            continue
    return out


def rdel(key: str) -> None:
    r = get_redis()
    if not r:
        return
    try:
        r.delete(rkey(key))
    except redis.RedisError as e:
        log.warning("redis_delete_failed", extra={"key": key, "error": str(e)})


def racquire(key: str, ttl_s: int) -> Optional[bool]:
    """SET NX lock. None means Redis is not configured."""
    r = get_redis()
    if not r:
        return None
    try:
        return bool(r.set(rkey(key), "1", nx=True, ex=max(1, ttl_s)))
    except redis.RedisError:
        return None


def configure_logging() -> logging.Logger:
    """
    Configure the package logger.
    - JSON lines via python-json-logger.
    - LOG_LEVEL env supported.
    """
    level = (os.getenv("LOG_LEVEL") or "INFO").upper()
    logger = logging.getLogger("dbexplorer")
    logger.setLevel(level)
    logger.propagate = False

    # If handlers already exist (e.g. reloader), don't double-add
    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(path)s %(method)s %(status)s %(latency_ms)s",
        )
    )
    logger.addHandler(handler)
    return logger
