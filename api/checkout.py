"""Vercel Serverless Function: POST /api/checkout

Creates a Stripe Checkout Session for the cart and returns
{sessionId, url, totals}. An access code that does not validate is
dropped and the cart is charged in full.
"""

from http.server import BaseHTTPRequestHandler

from _shared import serve_json
from server_utils import checkout_endpoint, options_response


class handler(BaseHTTPRequestHandler):
    def do_OPTIONS(self):
        options_response(self)

    def do_POST(self):
        serve_json(self, checkout_endpoint, "checkout", max_requests=10, window_seconds=60)
