"""Local development server for the LYRĪON storefront and order broker.

Extends SimpleHTTPRequestHandler to add the broker endpoints:
- POST /api/checkout:             Create a product checkout session
- POST /api/oracle:               Create an Oracle reading checkout session
- POST /api/validate_code:        Validate an access code
- POST /api/webhook:              Stripe webhook (signature checked)
- POST /api/fulfillment_webhook:  Printful status callback
- POST /api/contact:              Contact form

All other requests (GET, HEAD) are served from public/.
"""

import logging
import os
import sys
from http.server import HTTPServer, SimpleHTTPRequestHandler
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent / "src"))

from lyrion.config import Settings  # noqa: E402
from lyrion.webhook import WebhookDispatcher  # noqa: E402
from server_utils import (  # noqa: E402
    MAX_WEBHOOK_SIZE,
    checkout_endpoint,
    contact_endpoint,
    fulfillment_status_endpoint,
    json_response,
    options_response,
    oracle_endpoint,
    read_json_body,
    read_raw_body,
    run_endpoint,
    validate_code_endpoint,
    webhook_endpoint,
)

logger = logging.getLogger(__name__)

JSON_ROUTES = {
    "/api/checkout": checkout_endpoint,
    "/api/oracle": oracle_endpoint,
    "/api/validate_code": validate_code_endpoint,
    "/api/contact": contact_endpoint,
    "/api/fulfillment_webhook": fulfillment_status_endpoint,
}


class BrokerHandler(SimpleHTTPRequestHandler):
    """Static storefront plus the order-broker API."""

    settings: Settings = None
    dispatcher: WebhookDispatcher = None

    def __init__(self, *args, **kwargs):
        super().__init__(
            *args,
            directory=os.path.join(os.path.dirname(os.path.abspath(__file__)), "public"),
            **kwargs,
        )

    def list_directory(self, path):
        self.send_error(403, "Directory listing not allowed")
        return None

    def end_headers(self):
        self.send_header("X-Content-Type-Options", "nosniff")
        self.send_header("X-Frame-Options", "SAMEORIGIN")
        self.send_header("Referrer-Policy", "strict-origin-when-cross-origin")
        super().end_headers()

    def do_POST(self):
        path = self.path.split("?", 1)[0]
        if path == "/api/webhook":
            self._handle_webhook()
        elif path in JSON_ROUTES:
            body = read_json_body(self)
            if body is None:
                return
            status, data = run_endpoint(JSON_ROUTES[path], body, self.settings)
            self.log_message("%s -> %d", path, status)
            json_response(self, data, status)
        else:
            self.send_error(404, "Not Found")

    def _handle_webhook(self):
        raw = read_raw_body(self, MAX_WEBHOOK_SIZE)
        if raw is None:
            return
        status, data = run_endpoint(
            webhook_endpoint, raw, self.headers.get("Stripe-Signature", ""), self.dispatcher
        )
        self.log_message("Webhook %s -> %d (%s)", data.get("event_id", "-"), status, data.get("outcome"))
        json_response(self, data, status)

    def do_OPTIONS(self):
        """Handle CORS preflight requests."""
        options_response(self)

    def log_message(self, fmt, *args):
        sys.stderr.write(f"[serve] {fmt % args}\n")


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    port = int(sys.argv[1]) if len(sys.argv) > 1 else 8042

    settings = Settings.from_env()
    BrokerHandler.settings = settings
    BrokerHandler.dispatcher = WebhookDispatcher.from_settings(settings)

    server = HTTPServer(("127.0.0.1", port), BrokerHandler)
    print(f"LYRĪON dev server on http://127.0.0.1:{port}")
    print(f"Stripe:      {'configured' if settings.stripe_secret_key else 'NOT configured'}")
    print(f"Webhook:     {'signed' if settings.stripe_webhook_secret else 'NO SECRET (all rejected)'}")
    print(f"Routing:     {settings.routing_json_url or '(unset)'}")
    print("Press Ctrl+C to stop\n")

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\nShutting down.")
        server.server_close()


if __name__ == "__main__":
    main()
