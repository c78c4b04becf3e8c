"""Vercel Serverless Function: POST /api/validate_code

Body: {"code": "..."}. Always answers 200 with {valid, owner?,
discount_percent?, reason?}; a lookup failure is reported as invalid.
"""

from http.server import BaseHTTPRequestHandler

from _shared import serve_json
from server_utils import options_response, validate_code_endpoint


class handler(BaseHTTPRequestHandler):
    def do_OPTIONS(self):
        options_response(self)

    def do_POST(self):
        # Tighter limit: codes are guessable
        serve_json(self, validate_code_endpoint, "validate_code", max_requests=5, window_seconds=60)
