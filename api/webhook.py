"""Vercel Serverless Function: POST /api/webhook

Stripe webhook. The signature is checked against the raw body before
anything else happens; checkout.session.completed events are then
routed to fulfillment, the access code is redeemed and the order emails
are sent. Answers 200 for handled, degraded, ignored and duplicate
deliveries, 400 for a bad signature and 500 when processing crashed so
Stripe redelivers.
"""

import logging
from http.server import BaseHTTPRequestHandler

from _shared import Settings
from lyrion.webhook import WebhookDispatcher
from server_utils import (
    MAX_WEBHOOK_SIZE,
    json_response,
    options_response,
    read_raw_body,
    run_endpoint,
    webhook_endpoint,
)

logger = logging.getLogger("lyrion.api.webhook")

# One dispatcher per warm instance; the processed-event store lives on /tmp
_dispatcher = None


def get_dispatcher():
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = WebhookDispatcher.from_settings(Settings.from_env())
    return _dispatcher


class handler(BaseHTTPRequestHandler):
    def do_POST(self):
        raw_body = read_raw_body(self, MAX_WEBHOOK_SIZE)
        if raw_body is None:
            return
        sig_header = self.headers.get("Stripe-Signature", "")
        status, data = run_endpoint(webhook_endpoint, raw_body, sig_header, get_dispatcher())
        logger.info("Webhook %s -> %d %s", data.get("event_id", "-"), status, data.get("outcome", ""))
        json_response(self, data, status)

    def do_OPTIONS(self):
        options_response(self)
