"""CLI entry point for lyrion - storefront and order-broker tooling."""

from __future__ import annotations

import json
import logging
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path

import click

from lyrion.config import Settings

# -- CLI group --------------------------------------------------------------------------


@click.group()
@click.version_option(version="0.1.0", prog_name="lyrion")
@click.option("-v", "--verbose", is_flag=True, help="Verbose output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool):
    """LYRĪON storefront and order-broker tools."""
    if verbose:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")


def _decimal(value: str, name: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise click.BadParameter(f"{value!r} is not a number", param_hint=name) from None


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


# -- totals ----------------------------------------------------------------------------


@cli.command()
@click.argument("subtotal")
@click.option("--discount", default=None, help="Access-code discount percent")
@click.option("--free-shipping-over", default=None, help="Waive shipping from this subtotal")
def totals(subtotal, discount, free_shipping_over):
    """Show discount, shipping, VAT and total for a cart subtotal."""
    from lyrion.totals import compute_totals, format_price

    threshold = _decimal(free_shipping_over, "--free-shipping-over") if free_shipping_over else None
    pct = _decimal(discount, "--discount") if discount else None
    try:
        result = compute_totals(_decimal(subtotal, "SUBTOTAL"), pct, free_shipping_threshold=threshold)
    except ValueError as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(1)

    click.echo(f"  Subtotal: {format_price(result.subtotal)}")
    if result.discount_amount:
        click.echo(f"  Discount: -{format_price(result.discount_amount)}")
    click.echo(f"  Shipping: {format_price(result.shipping) if result.shipping else 'FREE'}")
    click.echo(f"  VAT:      {format_price(result.tax)}")
    click.secho(f"  Total:    {format_price(result.total)}", bold=True)


# -- cart ------------------------------------------------------------------------------


@cli.group()
@click.option(
    "--store",
    type=click.Path(dir_okay=False),
    default="lyrion-storage.json",
    show_default=True,
    help="JSON file standing in for the browser's local storage",
)
@click.pass_context
def cart(ctx: click.Context, store: str):
    """Inspect and edit a persisted cart."""
    from lyrion.cart import CartManager
    from lyrion.storage import JsonFileStorage

    ctx.obj = CartManager(JsonFileStorage(store))


def _show_cart(manager) -> None:
    from lyrion.totals import format_price

    if not manager.items:
        click.echo("Your cart is empty")
        return
    for item in manager.items:
        size = f" [{item.variant}]" if item.variant else ""
        click.echo(f"  {item.quantity} x {item.sku}{size} {item.title}  {format_price(item.line_total)}")
    click.echo(f"  Items: {manager.item_count()}  Total: {format_price(manager.total())}")


@cart.command("show")
@click.pass_obj
def cart_show(manager):
    """List cart lines and the running total."""
    _show_cart(manager)


@cart.command("add")
@click.argument("sku")
@click.option("--title", required=True, help="Display title")
@click.option("--price", required=True, help="Unit price")
@click.option("--size", default=None, help="Size / variant")
@click.option("--category", default=None)
@click.pass_obj
def cart_add(manager, sku, title, price, size, category):
    """Add one unit of a product (merges with an identical line)."""
    from lyrion.schema import Product

    product = Product(sku=sku, title=title, price=_decimal(price, "--price"), category=category)
    line = manager.add(product, size)
    click.secho(f"Added {line.title} (qty {line.quantity})", fg="green")
    _show_cart(manager)


@cart.command("remove")
@click.argument("sku")
@click.option("--size", default=None)
@click.pass_obj
def cart_remove(manager, sku, size):
    """Remove a line."""
    if not manager.remove(sku, size):
        click.secho(f"{sku} is not in the cart", fg="yellow")
        sys.exit(1)
    _show_cart(manager)


@cart.command("set")
@click.argument("sku")
@click.argument("quantity", type=int)
@click.option("--size", default=None)
@click.pass_obj
def cart_set(manager, sku, quantity, size):
    """Set a line's quantity (0 or less removes it)."""
    if not manager.set_quantity(sku, size, quantity):
        click.secho(f"{sku} is not in the cart", fg="yellow")
        sys.exit(1)
    _show_cart(manager)


@cart.command("clear")
@click.pass_obj
def cart_clear(manager):
    """Empty the cart."""
    manager.clear()
    _show_cart(manager)


# -- access codes ----------------------------------------------------------------------


@cli.command("validate-code")
@click.argument("code")
@click.option("--file", "doc_file", type=click.Path(exists=True), default=None, help="Local codes JSON")
@click.option("--url", default=None, help="Public codes JSON URL (default: ACCESS_CODES_URL)")
def validate_code_cmd(code, doc_file, url):
    """Check an access code without redeeming it."""
    from lyrion.access_codes import AccessCodeService, GitHubCodeStore, MemoryCodeStore

    if doc_file:
        try:
            store = MemoryCodeStore(json.loads(Path(doc_file).read_text(encoding="utf-8")))
        except json.JSONDecodeError as e:
            click.secho(f"Error reading {doc_file}: {e}", fg="red", err=True)
            sys.exit(1)
    else:
        settings = Settings.from_env()
        store = GitHubCodeStore.from_settings(settings)
        if url:
            store.public_url = url

    result = AccessCodeService(store).validate(code)
    if result.valid:
        click.secho(f"{code.upper()}: valid, {result.discount_percent:g}% off ({result.owner})", fg="green")
        return
    click.secho(f"{code.upper()}: not valid ({result.reason})", fg="yellow")
    sys.exit(1)


# -- routing ---------------------------------------------------------------------------


@cli.command()
@click.argument("sku")
@click.option("--size", default=None)
@click.option("--file", "table_file", type=click.Path(exists=True), default=None)
@click.option("--url", default=None, help="Routing JSON URL (default: ROUTING_JSON_URL)")
def routing(sku, size, table_file, url):
    """Show which provider and variant fulfil a SKU."""
    from lyrion.errors import ReferenceDataError
    from lyrion.routing import load_routing_table, parse_routing_table

    try:
        if table_file:
            table = parse_routing_table(json.loads(Path(table_file).read_text(encoding="utf-8")))
        else:
            table = load_routing_table(url or Settings.from_env().routing_json_url)
    except (ReferenceDataError, json.JSONDecodeError) as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(1)

    entry = table.get(sku)
    if entry is None:
        click.secho(f"No routing found for SKU: {sku}", fg="yellow")
        sys.exit(1)
    click.echo(f"  Provider: {entry.provider}")
    variant = entry.variant_for(size)
    click.echo(f"  Variant:  {variant or '(none for this size)'}")
    if entry.variants:
        click.echo(f"  Sizes:    {', '.join(entry.variants)}")


# -- variants --------------------------------------------------------------------------


@cli.command()
@click.option("--routing", "as_routing", is_flag=True, help="Emit routing-table entries")
def variants(as_routing):
    """List Printful store products and their variant ids."""
    from lyrion.errors import LyrionError
    from lyrion.fulfillment import PrintfulClient

    settings = Settings.from_env()
    client = PrintfulClient(settings.printful_api_key, settings.printful_store_id)
    try:
        products = client.list_store_variants()
    except LyrionError as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(1)

    if as_routing:
        entries = [
            {
                "sku": p["external_id"] or str(p["product_id"]),
                "provider": "printful",
                "variants": {
                    (v["size"] or "default"): str(v["variant_id"]) for v in p["variants"]
                },
            }
            for p in products
        ]
        _echo_json(entries)
        return

    click.echo(f"Found {len(products)} products")
    for p in products:
        click.echo(f"\n  {p['product_name']} (ID: {p['product_id']})")
        for v in p["variants"]:
            click.echo(
                f"    {v['variant_id']}  size={v['size'] or 'N/A'}  "
                f"color={v['color'] or 'N/A'}  sku={v['sku'] or '-'}"
            )


# -- verify-signature ------------------------------------------------------------------


@cli.command("verify-signature")
@click.argument("payload_file", type=click.Path(exists=True))
@click.option("--header", required=True, help="Stripe-Signature header value")
@click.option("--secret", envvar="STRIPE_WEBHOOK_SECRET", required=True)
def verify_signature_cmd(payload_file, header, secret):
    """Check a saved webhook payload against its signature header."""
    from lyrion.errors import SignatureError
    from lyrion.webhook import verify_event

    payload = Path(payload_file).read_bytes()
    try:
        event = verify_event(payload, header, secret)
    except SignatureError as e:
        click.secho(f"Rejected: {e}", fg="red", err=True)
        sys.exit(1)
    click.secho(f"Signature OK: {event.get('type')} {event.get('id')}", fg="green")
