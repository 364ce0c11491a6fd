"""Read-API guard: API key, IP allowlist and in-memory rate limiting."""

from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from threading import Lock

from fastapi import HTTPException, Request

from sms_relay.utils import get_request_ip, verify_api_key

logger = logging.getLogger(__name__)


class InMemoryRateLimiter:
    """Per-client sliding-window rate limiter using deque timestamps."""

    def __init__(self, requests_per_window: int, window_seconds: int) -> None:
        self._requests = max(requests_per_window, 1)
        self._window = max(window_seconds, 1)
        self._hits: dict[str, deque[float]] = defaultdict(deque)
        self._lock = Lock()

    def allow(self, client_key: str) -> bool:
        now = time.time()
        with self._lock:
            dq = self._hits[client_key]
            cutoff = now - self._window
            while dq and dq[0] < cutoff:
                dq.popleft()
            if len(dq) >= self._requests:
                return False
            dq.append(now)
            return True

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


def enforce_read_api(
    request: Request,
    limiter: InMemoryRateLimiter,
    api_key: str,
    allowlist: list[str],
    name: str,
) -> None:
    """
    Guard for the read-only endpoints. Checked in order: server key
    configured (500), caller IP allowed (403), rate limit (429), API key (401).
    """
    if not api_key:
        logger.error(f"Read API key is not set, refusing {name}")
        raise HTTPException(status_code=500, detail="Server configuration error")

    ip = get_request_ip(request)
    if allowlist and ip not in allowlist:
        logger.warning(f"IP not allowed for {name}: {ip}")
        raise HTTPException(status_code=403, detail="Forbidden")

    if not limiter.allow(ip):
        raise HTTPException(status_code=429, detail="Too many requests")

    if not verify_api_key(request, api_key):
        logger.warning(f"Unauthorized {name} from {ip}")
        raise HTTPException(status_code=401, detail="Unauthorized")
