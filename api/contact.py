"""Vercel Serverless Function: POST /api/contact

Forwards a contact-form message (name, email, subject, message) to the
studio inbox.
"""

from http.server import BaseHTTPRequestHandler

from _shared import serve_json
from server_utils import contact_endpoint, options_response


class handler(BaseHTTPRequestHandler):
    def do_OPTIONS(self):
        options_response(self)

    def do_POST(self):
        serve_json(self, contact_endpoint, "contact", max_requests=3, window_seconds=300)
