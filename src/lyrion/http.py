"""Minimal JSON-over-HTTP helper shared by the external API clients."""

from __future__ import annotations

import json
import logging
from http.client import HTTPException
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from lyrion.config import HTTP_TIMEOUT
from lyrion.errors import ProviderError, TransportError

logger = logging.getLogger("lyrion.http")


def _error_message(body: bytes, default: str) -> str:
    """Pull a human-readable message out of a provider error body."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, ValueError):
        text = body.decode("utf-8", "replace").strip()
        return text[:300] or default
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            return str(err.get("message") or default)
        if isinstance(err, str):
            return err
        if data.get("message"):
            return str(data["message"])
        if isinstance(data.get("result"), str):
            return data["result"]
    return default


def request_json(
    method: str,
    url: str,
    *,
    provider: str,
    payload: Any = None,
    headers: dict[str, str] | None = None,
    timeout: float = HTTP_TIMEOUT,
) -> Any:
    """Send a request with an optional JSON body and decode the JSON reply.

    Raises ProviderError for HTTP error statuses and unparseable replies,
    TransportError when the host cannot be reached or the reply is cut off.
    """
    data = json.dumps(payload).encode() if payload is not None else None
    req = Request(url, data=data, method=method)
    req.add_header("Accept", "application/json")
    if data is not None:
        req.add_header("Content-Type", "application/json")
    for k, v in (headers or {}).items():
        req.add_header(k, v)

    try:
        with urlopen(req, timeout=timeout) as resp:  # noqa: S310
            raw = resp.read()
    except HTTPError as e:
        body = e.read() if e.fp else b""
        message = _error_message(body, e.reason or "request failed")
        logger.warning("%s %s -> %s: %s", method, url, e.code, message)
        raise ProviderError(provider, message, e.code) from e
    except (URLError, HTTPException, OSError) as e:
        # URLError, timeouts, resets and TLS errors are all OSErrors;
        # HTTPException covers truncated or malformed replies
        logger.warning("%s %s unreachable: %s", method, url, e)
        raise TransportError(provider, str(getattr(e, "reason", e) or type(e).__name__)) from e

    if not raw:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, ValueError) as e:
        raise ProviderError(provider, "invalid JSON response") from e


def fetch_json(url: str, *, provider: str = "static", timeout: float = HTTP_TIMEOUT) -> Any:
    """GET a public JSON document."""
    return request_json("GET", url, provider=provider, timeout=timeout)
