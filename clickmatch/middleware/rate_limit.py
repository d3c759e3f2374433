"""
Rate limiter — in-process sliding window per API key.

Good enough for the handful of internal callers this service has; each
worker process keeps its own window.
"""

import time

from fastapi import HTTPException

import structlog

logger = structlog.get_logger()

_memory_store: dict[str, list[float]] = {}


def _sliding_window_check(key: str, limit: int, window_seconds: int = 60) -> tuple[bool, int]:
    now = time.time()
    cutoff = now - window_seconds

    hits = [t for t in _memory_store.get(key, []) if t > cutoff]
    _memory_store[key] = hits

    if len(hits) >= limit:
        return False, 0

    hits.append(now)
    return True, limit - len(hits)


def check_rate_limit(key: str, limit: int, window: int = 60) -> int:
    allowed, remaining = _sliding_window_check(key, limit, window)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, limit=limit)
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded. Slow down.",
            headers={
                "Retry-After": str(window),
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
            },
        )
    return remaining


def rate_limit_api_key(key_id: str, limit: int = 120) -> int:
    return check_rate_limit(f"apikey:{key_id}", limit)


def reset_rate_limits() -> None:
    _memory_store.clear()
