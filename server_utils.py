"""Shared utilities for serve.py and Vercel serverless API handlers.

Holds the HTTP JSON helpers and the endpoint functions themselves. Each
endpoint takes the parsed request (and settings) and returns
``(status, payload)`` so that the Vercel handlers and the local dev server
run exactly the same code.
"""

from __future__ import annotations

import json
import logging
import os
from http.server import BaseHTTPRequestHandler
from typing import Any

from lyrion.access_codes import AccessCodeService, GitHubCodeStore
from lyrion.checkout import create_oracle_session, create_product_session
from lyrion.config import Settings
from lyrion.emails import EmailSender, contact_message
from lyrion.errors import LyrionError, SignatureError
from lyrion.fulfillment import summarize_status_event
from lyrion.webhook import WebhookDispatcher

logger = logging.getLogger("lyrion.server")

MAX_BODY_SIZE = 64 * 1024
MAX_WEBHOOK_SIZE = 1_000_000

ALLOWED_ORIGINS = {"https://lyrion.co.uk", "https://www.lyrion.co.uk"}
if os.environ.get("VERCEL_ENV") != "production":
    ALLOWED_ORIGINS |= {"http://localhost:8042", "http://127.0.0.1:8042"}

Result = tuple[int, dict]


# ---------------------------------------------------------------------------
# HTTP helpers (work with any BaseHTTPRequestHandler subclass)
# ---------------------------------------------------------------------------


def cors_headers(origin: str) -> dict[str, str]:
    """Return CORS headers if origin is allowed, empty dict otherwise."""
    if origin in ALLOWED_ORIGINS:
        return {
            "Access-Control-Allow-Origin": origin,
            "Access-Control-Allow-Methods": "POST, OPTIONS",
            "Access-Control-Allow-Headers": "Content-Type, Stripe-Signature",
            "Vary": "Origin",
        }
    return {}


def json_response(
    handler: BaseHTTPRequestHandler,
    data: Any,
    status: int = 200,
    headers: dict[str, str] | None = None,
) -> None:
    """Send a JSON response with CORS headers and optional extra headers."""
    body = json.dumps(data).encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json")
    handler.send_header("Content-Length", str(len(body)))
    for k, v in cors_headers(handler.headers.get("Origin", "")).items():
        handler.send_header(k, v)
    if headers:
        for k, v in headers.items():
            handler.send_header(k, v)
    handler.end_headers()
    handler.wfile.write(body)


def json_error(handler: BaseHTTPRequestHandler, message: str, status: int = 400) -> None:
    """Send a JSON error response."""
    json_response(handler, {"error": message}, status)


def options_response(handler: BaseHTTPRequestHandler) -> None:
    """Answer a CORS preflight."""
    handler.send_response(204)
    for k, v in cors_headers(handler.headers.get("Origin", "")).items():
        handler.send_header(k, v)
    handler.end_headers()


def read_raw_body(handler: BaseHTTPRequestHandler, max_size: int) -> bytes | None:
    """Read the request body bytes, or send 413 and return None."""
    length = int(handler.headers.get("Content-Length", 0) or 0)
    if length > max_size or length < 0:
        logger.warning(
            "Rejected request from %s: payload too large (%d bytes)",
            handler.client_address[0],
            length,
        )
        json_error(handler, "Payload too large", 413)
        return None
    return handler.rfile.read(length) if length else b""


def read_json_body(handler: BaseHTTPRequestHandler, max_size: int = MAX_BODY_SIZE) -> dict | None:
    """Read and parse a JSON object body from an HTTP request handler.

    Returns the parsed dict on success, or None if an error response was
    already sent to the client.
    """
    raw = read_raw_body(handler, max_size)
    if raw is None:
        return None
    if not raw:
        logger.warning("Rejected request from %s: empty body", handler.client_address[0])
        json_error(handler, "Empty body", 400)
        return None

    try:
        body = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Rejected request from %s: invalid JSON body", handler.client_address[0])
        json_error(handler, "Invalid JSON", 400)
        return None
    if not isinstance(body, dict):
        json_error(handler, "Invalid JSON", 400)
        return None
    return body


def error_payload(exc: LyrionError) -> Result:
    """Map a LyrionError to its HTTP status and client-safe JSON body."""
    # Provider errors carry the provider's own message without the prefix
    data: dict[str, Any] = {"error": getattr(exc, "message", None) or str(exc)}
    fields = getattr(exc, "fields", None)
    if fields:
        data["fields"] = list(fields)
    return exc.status, data


def run_endpoint(func, *args) -> Result:
    """Call an endpoint function, turning exceptions into JSON errors.

    LyrionError carries its own status and message; anything else is
    logged and answered with a generic 500 so no traceback reaches the
    client.
    """
    try:
        return func(*args)
    except LyrionError as e:
        logger.warning("%s failed: %s", func.__name__, e)
        return error_payload(e)
    except Exception:
        logger.exception("%s crashed", func.__name__)
        return 500, {"error": "Internal server error"}


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


def _code_service(settings: Settings) -> AccessCodeService | None:
    if not settings.access_codes_url and not settings.access_codes_repo:
        return None
    return AccessCodeService(GitHubCodeStore.from_settings(settings))


def checkout_endpoint(body: dict, settings: Settings) -> Result:
    """POST /api/checkout: create a product checkout session."""
    return 200, create_product_session(body, settings, _code_service(settings))


def oracle_endpoint(body: dict, settings: Settings) -> Result:
    """POST /api/oracle: create an Oracle reading checkout session."""
    return 200, create_oracle_session(body, settings)


def validate_code_endpoint(body: dict, settings: Settings) -> Result:
    """POST /api/validate_code: never fails, an unusable code is just invalid."""
    service = _code_service(settings)
    if service is None:
        return 200, {"valid": False, "reason": "lookup_unavailable"}
    result = service.validate(body.get("code"))
    return 200, result.model_dump(mode="json", exclude_none=True)


def contact_endpoint(body: dict, settings: Settings) -> Result:
    """POST /api/contact: forward a contact-form message to the studio."""
    message = contact_message(body, settings.order_notification_email)
    EmailSender.from_settings(settings).send(message)
    return 200, {"success": True}


def fulfillment_status_endpoint(body: dict, settings: Settings) -> Result:
    """POST /api/fulfillment_webhook: log a Printful status callback."""
    summary = summarize_status_event(body)
    return 200, {"received": True, "status": summary["status"]}


def webhook_endpoint(raw_body: bytes, sig_header: str, dispatcher: WebhookDispatcher) -> Result:
    """POST /api/webhook: verify and dispatch one Stripe delivery.

    A failed outcome answers 500 so Stripe redelivers; every other outcome
    answers 200.
    """
    try:
        result = dispatcher.handle(raw_body, sig_header)
    except SignatureError as e:
        logger.warning("Webhook rejected: %s", e)
        return 400, {"error": "Invalid signature"}

    status = 500 if result.outcome == "failed" else 200
    return status, {
        "received": result.outcome != "failed",
        "outcome": result.outcome,
        "event_id": result.event_id,
        "notes": result.notes,
    }
