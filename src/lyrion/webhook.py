"""Stripe webhook dispatch: verify, deduplicate, fulfil, notify.

One delivery runs through:

  verify signature -> skip already-processed event ids -> keep only
  checkout.session.completed -> product or Oracle path -> redeem access
  code -> admin + customer emails

Anything that goes wrong after verification, such as a provider
rejecting the order or dropping the connection, is collected as a
problem instead of aborting. The delivery still answers 200 so Stripe
does not retry-loop, and the outcome is reported as "degraded" so the
order can be reconciled by hand.
"""

from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import Callable

import stripe

from lyrion.access_codes import AccessCodeService, GitHubCodeStore
from lyrion.checkout import unpack_items
from lyrion.config import (
    AUTOMATED_PROVIDERS,
    MANUAL_PROVIDERS,
    ORACLE_TIERS,
    ORDER_TYPE_ORACLE,
    ORDER_TYPE_PRODUCT,
    Settings,
)
from lyrion.emails import (
    EmailMessage,
    EmailSender,
    admin_order_notification,
    customer_receipt,
    error_notification,
    oracle_admin_notification,
    oracle_customer_receipt,
    studio_alert,
)
from lyrion.errors import LyrionError, SignatureError
from lyrion.fulfillment import client_for
from lyrion.routing import load_routing_table, plan_fulfillment
from lyrion.schema import Address, Customer, PaidOrder, WebhookResult
from lyrion.storage import ProcessedEventStore

logger = logging.getLogger("lyrion.webhook")

COMPLETED_EVENT = "checkout.session.completed"
SIGNATURE_TOLERANCE = 300  # seconds


def verify_event(payload: bytes | str, sig_header: str, secret: str) -> dict:
    """Check the Stripe-Signature header and return the decoded event.

    Raises SignatureError when the secret is missing, the header is
    malformed, the timestamp is outside tolerance or the HMAC differs.
    """
    if not secret:
        raise SignatureError("STRIPE_WEBHOOK_SECRET not configured")
    if not sig_header:
        raise SignatureError("Missing Stripe-Signature header")
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SignatureError("Payload is not UTF-8") from e

    try:
        stripe.WebhookSignature.verify_header(payload, sig_header, secret, SIGNATURE_TOLERANCE)
    except stripe.SignatureVerificationError as e:
        raise SignatureError(f"Invalid signature: {e}") from e

    try:
        event = json.loads(payload)
    except json.JSONDecodeError as e:
        raise SignatureError("Invalid JSON payload") from e
    if not isinstance(event, dict):
        raise SignatureError("Event must be a JSON object")
    return event


def _address(metadata: dict, details: dict) -> Address | None:
    if metadata.get("ship_line1"):
        return Address(
            line1=metadata["ship_line1"],
            line2=metadata.get("ship_line2", ""),
            city=metadata.get("ship_city", ""),
            postal_code=metadata.get("ship_postal_code", ""),
            country=metadata.get("ship_country") or "GB",
        )
    addr = details.get("address") or {}
    if addr.get("line1"):
        return Address(
            line1=addr["line1"],
            line2=addr.get("line2") or "",
            city=addr.get("city") or "",
            postal_code=addr.get("postal_code") or "",
            country=addr.get("country") or "GB",
        )
    return None


def paid_order_from_session(session: dict, admin_email: str) -> PaidOrder:
    """Rebuild the order from a completed Checkout Session object."""
    metadata = session.get("metadata") or {}
    details = session.get("customer_details") or {}
    shipping = session.get("shipping_details") or {}

    order_type = metadata.get("order_type") or metadata.get("product_type") or ORDER_TYPE_PRODUCT
    tier = ORACLE_TIERS.get(metadata.get("tier", ""), {})

    return PaidOrder(
        session_id=session.get("id", ""),
        order_type=order_type,
        customer_name=metadata.get("customer_name") or details.get("name") or "Customer",
        customer_email=metadata.get("customer_email")
        or details.get("email")
        or session.get("customer_email")
        or "",
        address=_address(metadata, shipping or details),
        amount=Decimal(session.get("amount_total") or 0) / 100,
        currency=(session.get("currency") or "gbp").upper(),
        items=unpack_items(metadata) if order_type == ORDER_TYPE_PRODUCT else [],
        access_code=metadata.get("access_code") or None,
        tier=metadata.get("tier", ""),
        tier_name=tier.get("name", metadata.get("tier", "reading")),
        delivery=tier.get("delivery", "48-72 hours"),
        question=metadata.get("question", ""),
        birth_date=metadata.get("birth_date", ""),
        birth_city=metadata.get("birth_city", ""),
        admin_email=admin_email,
    )


class WebhookDispatcher:
    """Runs one webhook delivery to completion and reports the outcome."""

    def __init__(
        self,
        settings: Settings,
        *,
        events: ProcessedEventStore | None = None,
        codes: AccessCodeService | None = None,
        mailer: EmailSender | None = None,
        routing_loader: Callable[[str], dict] = load_routing_table,
        client_factory: Callable = client_for,
    ):
        self.settings = settings
        self.events = events if events is not None else ProcessedEventStore(None)
        self.codes = codes
        self.mailer = mailer or EmailSender.from_settings(settings)
        self.routing_loader = routing_loader
        self.client_factory = client_factory

    @classmethod
    def from_settings(cls, settings: Settings) -> WebhookDispatcher:
        codes = None
        if settings.access_codes_repo and settings.github_token:
            codes = AccessCodeService(GitHubCodeStore.from_settings(settings))
        return cls(
            settings,
            events=ProcessedEventStore(settings.processed_events_path or None),
            codes=codes,
        )

    # -- entry point ---------------------------------------------------------

    def handle(self, payload: bytes | str, sig_header: str) -> WebhookResult:
        """Verify and process one delivery. SignatureError propagates."""
        event = verify_event(payload, sig_header, self.settings.stripe_webhook_secret)
        event_id = str(event.get("id", ""))
        event_type = str(event.get("type", ""))

        if event_id and self.events.seen(event_id):
            logger.info("Skipping already-processed event %s", event_id)
            return WebhookResult(outcome="duplicate", event_id=event_id, event_type=event_type)

        try:
            result = self._process(event, event_id, event_type)
        except Exception as e:
            logger.exception("Webhook %s (%s) failed", event_id, event_type)
            return WebhookResult(
                outcome="failed", event_id=event_id, event_type=event_type, notes=[str(e)]
            )

        if event_id:
            self.events.record(event_id)
        return result

    def _process(self, event: dict, event_id: str, event_type: str) -> WebhookResult:
        if event_type != COMPLETED_EVENT:
            logger.info("Ignoring %s event %s", event_type, event_id)
            return WebhookResult(outcome="ignored", event_id=event_id, event_type=event_type)

        session = (event.get("data") or {}).get("object") or {}
        if session.get("payment_status") == "unpaid":
            logger.info("Session %s completed but unpaid; waiting", session.get("id"))
            return WebhookResult(
                outcome="ignored",
                event_id=event_id,
                event_type=event_type,
                notes=["payment not yet captured"],
            )

        problems: list[str] = []
        try:
            order = paid_order_from_session(session, self.settings.order_notification_email)
        except (ValueError, KeyError, TypeError) as e:
            # Corrupt item metadata: still tell the studio about the payment
            logger.exception("Could not read order metadata for %s", session.get("id"))
            problems.append(f"unreadable order metadata: {e}")
            metadata = dict(session.get("metadata") or {})
            metadata = {k: v for k, v in metadata.items() if not k.startswith("items_")}
            order = paid_order_from_session(
                {**session, "metadata": metadata}, self.settings.order_notification_email
            )
        logger.info("Processing %s order %s", order.order_type, order.session_id)

        if order.order_type == ORDER_TYPE_ORACLE:
            messages = [oracle_admin_notification(order)]
            if order.has_customer_email:
                messages.append(oracle_customer_receipt(order))
        else:
            self._fulfil(order, problems)
            messages = [admin_order_notification(order, problems)]
            if order.has_customer_email:
                messages.append(customer_receipt(order))

        if order.access_code:
            self._redeem(order, problems)

        for message in messages:
            self._send(message, problems)

        if problems:
            self._send(
                error_notification(order.admin_email, order.session_id, problems),
                [],
            )

        return WebhookResult(
            outcome="degraded" if problems else "handled",
            event_id=event_id,
            event_type=event_type,
            order_type=order.order_type,
            notes=problems,
        )

    # -- steps ---------------------------------------------------------------

    def _fulfil(self, order: PaidOrder, problems: list[str]) -> None:
        if not order.items:
            problems.append("no cart items recorded on the session")
            return
        try:
            table = self.routing_loader(self.settings.routing_json_url)
        except LyrionError as e:
            logger.error("Routing unavailable for %s: %s", order.session_id, e)
            problems.append(f"routing table unavailable: {e}")
            return

        plan = plan_fulfillment(order.items, table)
        for item, reason in plan.unrouted:
            problems.append(f"{item.sku}: {reason}")

        for provider, lines in plan.by_provider.items():
            if provider in MANUAL_PROVIDERS:
                self._send(studio_alert(order, [ln.item for ln in lines]), problems)
            elif provider in AUTOMATED_PROVIDERS:
                try:
                    client = self.client_factory(provider, self.settings)
                    client.create_order(order.session_id, order_customer(order), lines)
                except Exception as e:
                    logger.error("%s order failed for %s: %s", provider, order.session_id, e)
                    problems.append(f"{provider} order failed: {e}")
            else:
                logger.warning("Unknown provider %s for %s", provider, order.session_id)
                problems.append(f"unknown provider '{provider}' for {len(lines)} line(s)")

    def _redeem(self, order: PaidOrder, problems: list[str]) -> None:
        if self.codes is None:
            problems.append(f"access code {order.access_code} not recorded (store not configured)")
            return
        try:
            self.codes.apply(order.access_code, order.session_id, float(order.amount))
        except Exception as e:
            logger.warning("Could not redeem %s for %s: %s", order.access_code, order.session_id, e)
            problems.append(f"access code {order.access_code} not recorded: {e}")

    def _send(self, message: EmailMessage, problems: list[str]) -> None:
        try:
            self.mailer.send(message)
        except Exception as e:
            logger.error("Email '%s' to %s failed: %s", message.subject, message.to, e)
            problems.append(f"email '{message.subject}' failed: {e}")


def order_customer(order: PaidOrder) -> Customer:
    """Customer view of a paid order for the provider clients."""
    return Customer.model_construct(
        name=order.customer_name, email=order.customer_email, address=order.address
    )
