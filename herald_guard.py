"""
herald_guard.py — Abuse controls shared by the OAuth endpoints, the tool
dispatcher and the session multiplexer.

  audit()      — structured JSON-lines entry on the herald-audit logger
  RateLimiter  — in-memory sliding window, keyed by client IP or principal
"""

import json
import logging
import time
from collections import deque
from typing import Any

audit_logger = logging.getLogger("herald-audit")


def audit(event: str, **kwargs: Any) -> None:
    """Emit a structured JSON audit log entry."""
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


class RateLimiter:
    """In-memory sliding window rate limiter."""

    def __init__(self, max_requests: int = 10, window: int = 60):
        self.max_requests = max_requests
        self.window = window
        self._buckets: dict[str, deque[float]] = {}

    def is_allowed(self, key: str, limit: int | None = None) -> bool:
        limit = self.max_requests if limit is None else limit
        now = time.time()
        cutoff = now - self.window
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = deque()
            self._buckets[key] = bucket
        while bucket and bucket[0] < cutoff:
            bucket.popleft()
        if len(bucket) >= limit:
            return False
        bucket.append(now)
        return True

    def cleanup(self) -> None:
        """Remove buckets with no hits inside the window."""
        cutoff = time.time() - self.window
        stale = [k for k, v in self._buckets.items() if not v or v[-1] < cutoff]
        for k in stale:
            del self._buckets[k]
