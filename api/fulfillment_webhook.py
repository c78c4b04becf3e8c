"""Vercel Serverless Function: POST /api/fulfillment_webhook

Printful status callbacks (package_shipped, order_failed, ...). Logged
only; always acknowledged so Printful does not retry.
"""

from http.server import BaseHTTPRequestHandler

from _shared import serve_json
from server_utils import fulfillment_status_endpoint, options_response


class handler(BaseHTTPRequestHandler):
    def do_OPTIONS(self):
        options_response(self)

    def do_POST(self):
        serve_json(self, fulfillment_status_endpoint, "fulfillment_webhook", max_requests=60)
