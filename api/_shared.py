"""Shared utilities for the LYRĪON API endpoints.

Prefixed with _ so Vercel does NOT expose it as a route. Importing it puts
the project root and src/ on sys.path so handlers can reach server_utils
and the lyrion package.
"""

import sys
import time
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from lyrion.config import Settings  # noqa: E402
from server_utils import (  # noqa: E402
    json_response,
    read_json_body,
    run_endpoint,
)


def client_ip(handler):
    """First address in X-Forwarded-For, else the socket peer."""
    return handler.headers.get("X-Forwarded-For", handler.client_address[0]).split(",")[0].strip()


def serve_json(handler, endpoint, name, max_requests=10, window_seconds=60):
    """Rate-limit, read the JSON body, run the endpoint and send its reply."""
    if not check_rate_limit(client_ip(handler), name, max_requests, window_seconds):
        json_response(handler, {"error": "Too many requests"}, 429)
        return
    body = read_json_body(handler)
    if body is None:
        return
    status, data = run_endpoint(endpoint, body, Settings.from_env())
    json_response(handler, data, status)


# --- Rate Limiter (in-memory, resets on cold start) ---

_rate_limits = {}  # {f"{ip}:{endpoint}": [timestamp, ...]}
_CLEANUP_INTERVAL = 300  # purge stale entries every 5 minutes
_last_cleanup = 0.0


def _cleanup_stale_entries(now, max_window):
    """Remove entries older than max_window to prevent unbounded growth."""
    global _last_cleanup
    if now - _last_cleanup < _CLEANUP_INTERVAL:
        return
    _last_cleanup = now
    stale_keys = [
        k
        for k, timestamps in _rate_limits.items()
        if not timestamps or now - timestamps[-1] > max_window
    ]
    for k in stale_keys:
        del _rate_limits[k]


def check_rate_limit(ip, endpoint, max_requests=10, window_seconds=60):
    """Check if request is within rate limit. Returns True if allowed."""
    key = f"{ip}:{endpoint}"
    now = time.time()
    _cleanup_stale_entries(now, window_seconds * 2)
    timestamps = [t for t in _rate_limits.get(key, []) if now - t < window_seconds]
    if len(timestamps) >= max_requests:
        _rate_limits[key] = timestamps
        return False
    timestamps.append(now)
    _rate_limits[key] = timestamps
    return True
