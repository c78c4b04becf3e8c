"""Checkout totals: discount, flat shipping, VAT, grand total.

The order of operations matches what the storefront displays and what
Stripe charges: the discount comes off the subtotal first, shipping is
added, VAT is charged on (discounted subtotal + shipping), and the total
is the sum of the three.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from lyrion.config import SHIPPING_FEE, TAX_RATE
from lyrion.schema import PENNY, ZERO, Totals


def money(value) -> Decimal:
    """Round a price to whole pence (half-up, like the displayed amounts)."""
    return Decimal(str(value)).quantize(PENNY, rounding=ROUND_HALF_UP)


def to_pence(value) -> int:
    """Convert a pound amount to the integer minor units Stripe expects."""
    return int(money(value) * 100)


def compute_totals(
    subtotal,
    discount_percent=None,
    *,
    shipping_fee: Decimal = SHIPPING_FEE,
    tax_rate: Decimal = TAX_RATE,
    free_shipping_threshold: Decimal | None = None,
) -> Totals:
    """Compute discount, shipping, tax and total for a cart subtotal.

    Parameters
    ----------
    subtotal:                 Sum of price x quantity over the cart.
    discount_percent:         Optional access-code discount (0-100).
    shipping_fee:             Flat shipping charge.
    tax_rate:                 VAT rate applied to discounted subtotal + shipping.
    free_shipping_threshold:  Waive shipping when the undiscounted subtotal
                              reaches this amount. None charges shipping always.
    """
    subtotal = money(subtotal)
    if subtotal < 0:
        msg = f"Subtotal must be >= 0, got {subtotal}"
        raise ValueError(msg)

    discount_amount = ZERO
    if discount_percent:
        pct = Decimal(str(discount_percent))
        if pct < 0 or pct > 100:
            msg = f"Discount percent must be between 0 and 100, got {pct}"
            raise ValueError(msg)
        discount_amount = money(subtotal * pct / 100)

    discounted = subtotal - discount_amount

    shipping = money(shipping_fee)
    if free_shipping_threshold is not None and subtotal >= Decimal(str(free_shipping_threshold)):
        shipping = ZERO

    tax = money(Decimal(str(tax_rate)) * (discounted + shipping))
    total = discounted + shipping + tax

    return Totals(
        subtotal=subtotal,
        discount_amount=discount_amount,
        shipping=shipping,
        tax=tax,
        total=total,
    )


def format_price(amount, currency: str = "GBP") -> str:
    """Format an amount the way the storefront shows it: '£12.50'."""
    symbols = {"GBP": "£", "USD": "$", "EUR": "€"}
    symbol = symbols.get(currency.upper(), currency.upper() + " ")
    return f"{symbol}{money(amount):,.2f}"
