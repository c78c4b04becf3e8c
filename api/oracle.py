"""Vercel Serverless Function: POST /api/oracle

Creates a Stripe Checkout Session for a paid Oracle reading. The tier
price is VAT-inclusive and carries no shipping.
"""

from http.server import BaseHTTPRequestHandler

from _shared import serve_json
from server_utils import options_response, oracle_endpoint


class handler(BaseHTTPRequestHandler):
    def do_OPTIONS(self):
        options_response(self)

    def do_POST(self):
        serve_json(self, oracle_endpoint, "oracle", max_requests=10, window_seconds=60)
