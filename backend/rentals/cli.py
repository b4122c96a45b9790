# Overview: Flask CLI command groups for bootstrap and inspection.

# backend/rentals/cli.py
# Rental engine commands. Run from backend/ with FLASK_APP=wsgi.py:
#   flask <group> <command> [options]
#
# Schema:
# - flask system init-db
#   Create missing tables (idempotent).
# - flask system reset-db --yes
#   Local development only. Wipes every store and reservation.
#
# Store management:
# - flask stores create --name "Main Store" --timezone "Europe/Paris" --tax-rate-bps 2000
#   Create a store with its booking configuration.
# - flask stores list
#
# Reservation inspection:
# - flask reservations show R2610-4821 [--store-id 1]
#   Print a reservation, its items, payments and activity trail.
# - flask reservations availability --product-id 3 --start 2026-11-01T09:00:00Z --end 2026-11-03T09:00:00Z
#   Print stock availability for a product over a window.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Product, Reservation, Store
from .services import availability_service
from .services.activity_service import list_activities
from .services.payment_service import summarize_payments
from .time_utils import parse_iso_datetime, to_utc_z


@click.group('system')
def system_group():
    """Schema setup for the rental database."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database schema ready.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """Drop and recreate every table. Local development only."""
    if not yes:
        click.confirm("WARN Every store, reservation and payment will be deleted. Continue?", abort=True)

    db.drop_all()
    db.create_all()

    click.echo("PASS Rental schema recreated (empty).")


# =============================================================================
# STORES
# =============================================================================

@click.group('stores')
def stores_group():
    """Store management commands."""


@stores_group.command('create')
@click.option('--name', required=True, help='Store name')
@click.option('--slug', default=None, help='Unique slug')
@click.option('--email', default=None, help='Store contact email')
@click.option('--timezone', 'tz_name', default='UTC', help='IANA timezone')
@click.option('--currency', default=None, help='ISO currency (defaults to DEFAULT_CURRENCY)')
@click.option('--tax-rate-bps', type=int, default=None, help='Enables tax at this rate (2000 = 20%)')
@click.option('--tax-mode', type=click.Choice(['inclusive', 'exclusive']), default='inclusive')
@click.option('--pending-blocks/--pending-does-not-block', default=True, help='Pending requests hold stock')
@click.option('--advance-notice-minutes', type=int, default=0)
@click.option('--min-rental-minutes', type=int, default=0)
@click.option('--max-rental-minutes', type=int, default=None)
@with_appcontext
def create_store(name, slug, email, tz_name, currency, tax_rate_bps, tax_mode, pending_blocks,
                 advance_notice_minutes, min_rental_minutes, max_rental_minutes):
    """Create a store."""
    from flask import current_app

    if slug and db.session.query(Store).filter_by(slug=slug).first():
        click.echo(f"FAIL Store slug '{slug}' already exists")
        raise SystemExit(1)

    store = Store(
        name=name,
        slug=slug,
        email=email,
        timezone=tz_name,
        currency=(currency or current_app.config.get("DEFAULT_CURRENCY", "EUR")).upper(),
        tax_enabled=tax_rate_bps is not None and tax_rate_bps > 0,
        tax_rate_bps=tax_rate_bps or 0,
        tax_display_mode=tax_mode,
        pending_blocks_availability=pending_blocks,
        advance_notice_minutes=advance_notice_minutes,
        min_rental_minutes=min_rental_minutes,
        max_rental_minutes=max_rental_minutes,
    )
    db.session.add(store)
    db.session.commit()
    click.echo(f"PASS Created store: {store.name} (ID: {store.id})")


@stores_group.command('list')
@with_appcontext
def list_stores():
    stores = db.session.query(Store).order_by(Store.id).all()
    if not stores:
        click.echo("No stores found.")
        return
    for store in stores:
        tax = f"{store.tax_rate_bps / 100:.2f}% {store.tax_display_mode}" if store.tax_enabled else "no tax"
        click.echo(f"  [{store.id}] {store.name} ({store.timezone}, {store.currency}, {tax})")


# =============================================================================
# RESERVATIONS
# =============================================================================

@click.group('reservations')
def reservations_group():
    """Reservation inspection commands."""


def _money(cents) -> str:
    if cents is None:
        return "-"
    return f"{cents / 100:.2f}"


@reservations_group.command('show')
@click.argument('number')
@click.option('--store-id', type=int, default=None, help='Store scope when numbers collide')
@with_appcontext
def show_reservation(number, store_id):
    """Print one reservation by its number."""
    query = db.session.query(Reservation).filter_by(number=number)
    if store_id is not None:
        query = query.filter_by(store_id=store_id)
    reservation = query.first()
    if not reservation:
        click.echo(f"FAIL Reservation {number} not found")
        raise SystemExit(1)

    click.echo(f"Reservation {reservation.number} (ID: {reservation.id}, store {reservation.store_id})")
    click.echo(f"  Status:   {reservation.status} / deposit {reservation.deposit_status}")
    click.echo(f"  Window:   {to_utc_z(reservation.start_date)} -> {to_utc_z(reservation.end_date)}")
    click.echo(f"  Customer: {reservation.customer.full_name} <{reservation.customer.email}>")
    click.echo(
        f"  Amounts:  subtotal {_money(reservation.subtotal_cents)}, deposit {_money(reservation.deposit_cents)}, "
        f"delivery {_money(reservation.delivery_fee_cents)}, total {_money(reservation.total_cents)}"
    )
    if reservation.tax_cents is not None:
        click.echo(f"  Tax:      {_money(reservation.tax_cents)} (excl. {_money(reservation.subtotal_excl_tax_cents)})")

    click.echo("  Items:")
    for item in reservation.items:
        name = (item.product_snapshot or {}).get("name") or "?"
        click.echo(f"    - {item.quantity} x {name} @ {_money(item.unit_price_cents)} = {_money(item.total_price_cents)}")

    summary = summarize_payments(reservation.payments)
    click.echo(
        f"  Paid:     rental {_money(summary['rental_paid_cents'])}, "
        f"deposit {_money(summary['deposit_collected_cents'])}, returned {_money(summary['deposit_returned_cents'])}"
    )

    click.echo("  Activity:")
    for activity in list_activities(reservation.id):
        click.echo(f"    {to_utc_z(activity.created_at)} {activity.activity_type} {activity.description or ''}".rstrip())


@reservations_group.command('availability')
@click.option('--product-id', type=int, required=True)
@click.option('--start', required=True, help='ISO-8601 start')
@click.option('--end', required=True, help='ISO-8601 end')
@click.option('--quantity', type=int, default=1)
@with_appcontext
def show_availability(product_id, start, end, quantity):
    """Print availability of one product over [start, end)."""
    product = db.session.get(Product, product_id)
    if not product:
        click.echo(f"FAIL Product {product_id} not found")
        raise SystemExit(1)

    start_dt, end_dt = parse_iso_datetime(start), parse_iso_datetime(end)
    if not start_dt or not end_dt or end_dt <= start_dt:
        click.echo("FAIL --end must be after --start")
        raise SystemExit(1)

    result = availability_service.get_product_availability(product, start_dt, end_dt, quantity=quantity)
    click.echo(
        f"{product.name}: {result.available}/{result.total} available "
        f"({result.reserved} reserved) -> {result.status}"
    )
    for combo in result.combinations:
        click.echo(f"    {combo.key}: {combo.remaining}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stores_group)
    app.cli.add_command(reservations_group)
