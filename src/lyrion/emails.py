"""Transactional email: message composition and the Resend transport."""

from __future__ import annotations

import html
import logging

from pydantic import BaseModel, Field, ValidationError, field_validator

from lyrion.config import Settings
from lyrion.errors import CheckoutValidationError, ProviderError
from lyrion.http import request_json
from lyrion.schema import CartItem, check_email
from lyrion.totals import format_price

logger = logging.getLogger("lyrion.emails")

RESEND_API_URL = "https://api.resend.com/emails"


class EmailMessage(BaseModel):
    to: list[str]
    subject: str
    text: str

    @property
    def html(self) -> str:
        paragraphs = [p for p in self.text.split("\n\n") if p.strip()]
        body = "".join(
            "<p>" + "<br>".join(html.escape(line) for line in p.strip().splitlines()) + "</p>"
            for p in paragraphs
        )
        return f'<div style="font-family: Georgia, serif; color: #0F0D0B">{body}</div>'


class EmailSender:
    def __init__(self, api_key: str, sender: str):
        self.api_key = api_key
        self.sender = sender

    @classmethod
    def from_settings(cls, settings: Settings) -> EmailSender:
        return cls(settings.resend_api_key, settings.email_from)

    def send(self, message: EmailMessage) -> str:
        """Send one message; returns the provider's message id."""
        if not self.api_key:
            raise ProviderError("resend", "RESEND_API_KEY not configured")
        result = request_json(
            "POST",
            RESEND_API_URL,
            provider="resend",
            payload={
                "from": self.sender,
                "to": message.to,
                "subject": message.subject,
                "html": message.html,
                "text": message.text,
            },
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        message_id = (result or {}).get("id", "")
        logger.info("Email '%s' sent to %s (%s)", message.subject, ", ".join(message.to), message_id)
        return message_id


# ---------------------------------------------------------------------------
# Message composition
# ---------------------------------------------------------------------------


def _item_lines(items: list[CartItem]) -> str:
    lines = []
    for item in items:
        size = f" (Size: {item.variant})" if item.variant else ""
        lines.append(f"- {item.quantity} x {item.title}{size} [{item.sku}] {format_price(item.line_total)}")
    return "\n".join(lines) or "- (no items)"


def _address_block(address) -> str:
    if address is None:
        return "(no shipping address)"
    parts = [address.line1, address.line2, address.city, address.postal_code, address.country]
    return "\n".join(p for p in parts if p)


def admin_order_notification(order, notes: list[str]) -> EmailMessage:
    text = (
        f"New order {order.session_id}\n\n"
        f"Customer: {order.customer_name} ({order.customer_email})\n"
        f"Total: {format_price(order.amount, order.currency)}\n\n"
        f"Items:\n{_item_lines(order.items)}\n\n"
        f"Ship to:\n{_address_block(order.address)}"
    )
    if notes:
        text += "\n\nNeeds attention:\n" + "\n".join(f"- {n}" for n in notes)
    return EmailMessage(to=[order.admin_email], subject=f"New LYRĪON order {order.session_id}", text=text)


def customer_receipt(order) -> EmailMessage:
    text = (
        f"Thank you for your order, {order.customer_name}!\n\n"
        "Your order has been confirmed and is being prepared.\n"
        "You'll receive tracking information within 2-3 business days.\n\n"
        f"Items:\n{_item_lines(order.items)}\n\n"
        f"Order ID: {order.session_id}\n"
        f"Total: {format_price(order.amount, order.currency)}"
    )
    return EmailMessage(to=[order.customer_email], subject="Order Confirmed - LYRĪON", text=text)


def studio_alert(order, items: list[CartItem]) -> EmailMessage:
    text = (
        "New manual/studio order received:\n\n"
        f"Customer: {order.customer_name} ({order.customer_email})\n"
        f"Order ID: {order.session_id}\n\n"
        f"Items to make and ship:\n{_item_lines(items)}\n\n"
        f"Ship to:\n{_address_block(order.address)}"
    )
    return EmailMessage(to=[order.admin_email], subject="Manual Order Notification", text=text)


def oracle_admin_notification(order) -> EmailMessage:
    text = (
        f"New {order.tier_name} requested:\n\n"
        f"Customer: {order.customer_name}\n"
        f"Email: {order.customer_email}\n"
        f"Birth date: {order.birth_date or '-'}\n"
        f"Birth city: {order.birth_city or '-'}\n"
        f"Question: {order.question}\n\n"
        f"Payment ID: {order.session_id}\n"
        f"Amount: {format_price(order.amount, order.currency)}"
    )
    return EmailMessage(to=[order.admin_email], subject="New Oracle Reading Request", text=text)


def oracle_customer_receipt(order) -> EmailMessage:
    text = (
        f"Thank you for consulting the Oracle, {order.customer_name}.\n\n"
        f"Your {order.tier_name} will be delivered within {order.delivery}.\n\n"
        f"Order ID: {order.session_id}"
    )
    return EmailMessage(
        to=[order.customer_email], subject="Your Oracle Reading is On Its Way", text=text
    )


def error_notification(admin_email: str, session_id: str, errors: list[str]) -> EmailMessage:
    text = (
        "Error processing order:\n\n"
        f"Payment ID: {session_id}\n"
        + "\n".join(f"Error: {e}" for e in errors)
        + "\n\nPlease process manually."
    )
    return EmailMessage(to=[admin_email], subject="Order Processing Error", text=text)


class ContactForm(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    email: str
    subject: str = Field(default="General enquiry", max_length=200)
    message: str = Field(min_length=1, max_length=5000)

    @field_validator("email")
    @classmethod
    def email_format(cls, v: str) -> str:
        return check_email(v)

    @field_validator("name", "subject", "message")
    @classmethod
    def stripped(cls, v: str) -> str:
        return v.strip()


def contact_message(form_data: dict, admin_email: str) -> EmailMessage:
    """Turn a contact-form submission into an admin email."""
    try:
        form = ContactForm.model_validate(form_data)
    except ValidationError as e:
        fields = [str(err["loc"][0]) for err in e.errors() if err.get("loc")]
        raise CheckoutValidationError("Please fill in all required fields", fields) from e
    if not form.name or not form.message:
        raise CheckoutValidationError("Please fill in all required fields", ["name", "message"])

    text = (
        f"From: {form.name} ({form.email})\n"
        f"Subject: {form.subject}\n\n"
        f"Message:\n{form.message}"
    )
    return EmailMessage(to=[admin_email], subject=f"Contact Form: {form.subject}", text=text)
