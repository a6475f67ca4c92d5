# Overview: Flask CLI command groups for bootstrap, stock audits and sale deduction repair.

# backend/retailpos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed-demo
#   Create a demo store (16% tax) and a few products with stock in both pools.
#
# Stock inspection:
# - python -m flask stock verify --store-id 1
#   Compare every product's cached stock with the movement ledger.
# - python -m flask stock low --store-id 1
#   List products at or below their minimum stock.
#
# Sale deduction repair:
# - python -m flask sales deductions --store-id 1 --sale-id 42
#   Show which items of a sale have their stock deduction recorded.
# - python -m flask sales reconcile --store-id 1 --sale-id 42 --actor-id 1
#   Deduct the items of a completed sale that are missing their deduction.

import click
from decimal import Decimal
from flask.cli import with_appcontext

from .errors import PosError
from .extensions import db
from .models import Store, Product
from .models.inventory import MOVEMENT_ADJUSTMENT, STOCK_TYPES
from .services import inventory_service, ledger_service, sales_service


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system seed-demo' for sample data.")


DEMO_PRODUCTS = [
    # sku, name, price, cost, venta, deposito
    ("COF-250", "Ground Coffee 250g", "10.00", "6.50", 24, 60),
    ("TEA-20", "Green Tea 20 bags", "4.75", "2.10", 40, 100),
    ("MUG-01", "Ceramic Mug", "8.90", "3.00", 6, 12),
]


@system_group.command('seed-demo')
@click.option('--actor-id', type=int, default=1, show_default=True, help='User id recorded on the opening movements')
@with_appcontext
def seed_demo(actor_id):
    """Create a demo store and products. Opening stock is booked through the ledger."""
    store = db.session.query(Store).filter_by(code="DEMO").first()
    if store:
        click.echo(f"PASS Using existing demo store: {store.name} (ID: {store.id})")
    else:
        store = Store(name="Demo Store", code="DEMO", tax_rate=Decimal("16.00"))
        db.session.add(store)
        db.session.commit()
        click.echo(f"PASS Created demo store: {store.name} (ID: {store.id})")

    created = 0
    for sku, name, price, cost, venta, deposito in DEMO_PRODUCTS:
        if db.session.query(Product).filter_by(store_id=store.id, sku=sku).first():
            continue
        product = Product(
            store_id=store.id,
            sku=sku,
            name=name,
            price=Decimal(price),
            cost=Decimal(cost),
        )
        db.session.add(product)
        db.session.commit()

        for stock_type, quantity in zip(STOCK_TYPES, (venta, deposito)):
            inventory_service.apply_stock_change(
                product_id=product.id,
                store_id=store.id,
                stock_type=stock_type,
                quantity_change=quantity,
                movement_type=MOVEMENT_ADJUSTMENT,
                reason="Opening stock",
                actor_id=actor_id,
            )
        created += 1

    click.echo(f"PASS {created} demo product(s) created")


@click.group('stock')
def stock_group():
    """Stock ledger inspection commands."""


@stock_group.command('verify')
@click.option('--store-id', type=int, required=True, help='Store ID')
@with_appcontext
def verify_stock(store_id):
    """Report every (product, pool) whose cached stock disagrees with the ledger."""
    mismatches = ledger_service.audit_store_stock(store_id)
    if not mismatches:
        click.echo(f"PASS Store {store_id}: stock matches the movement ledger")
        return

    click.echo(f"FAIL Store {store_id}: {len(mismatches)} mismatch(es)")
    for m in mismatches:
        click.echo(
            f"  product {m['product_id']} [{m['stock_type']}] "
            f"cached={m['cached_quantity']} ledger={m['ledger_quantity']} "
            f"(movement {m['last_movement_id']})"
        )
    raise SystemExit(1)


@stock_group.command('low')
@click.option('--store-id', type=int, required=True, help='Store ID')
@with_appcontext
def low_stock(store_id):
    products = inventory_service.get_low_stock_alerts(store_id)
    if not products:
        click.echo("No low stock products.")
        return

    click.echo(f"\n{'ID':<6} {'SKU':<12} {'Name':<30} {'Venta':>7} {'Min':>5} {'Deposito':>9} {'Min':>5}")
    click.echo("-" * 80)
    for p in products:
        click.echo(
            f"{p.id:<6} {(p.sku or '-'):<12} {p.name[:30]:<30} "
            f"{p.stock_venta:>7} {p.min_stock_venta:>5} {p.stock_deposito:>9} {p.min_stock_deposito:>5}"
        )


@click.group('sales')
def sales_group():
    """Sale deduction inspection and repair."""


def _print_deduction_status(status: dict) -> None:
    click.echo(
        f"Sale {status['sale_id']} ({status['receipt_number']}) "
        f"status={status['payment_status']} complete={status['complete']}"
    )
    for item in status["items"]:
        mark = "PASS" if item["deducted"] else "MISSING"
        click.echo(
            f"  {mark:<8} item {item['sale_item_id']} product {item['product_id']} "
            f"[{item['stock_type']}] qty {item['quantity']}"
        )


@sales_group.command('deductions')
@click.option('--store-id', type=int, required=True, help='Store ID')
@click.option('--sale-id', type=int, required=True, help='Sale ID')
@with_appcontext
def deduction_status(store_id, sale_id):
    try:
        status = sales_service.get_deduction_status(sale_id, store_id)
    except PosError as e:
        raise click.ClickException(str(e))
    _print_deduction_status(status)


@sales_group.command('reconcile')
@click.option('--store-id', type=int, required=True, help='Store ID')
@click.option('--sale-id', type=int, required=True, help='Sale ID')
@click.option('--actor-id', type=int, required=True, help='User id recorded on the movements')
@with_appcontext
def reconcile(store_id, sale_id, actor_id):
    """Deduct the items of a completed sale that are still missing their movement."""
    try:
        status = sales_service.reconcile_sale_deductions(sale_id, store_id, actor_id)
    except PosError as e:
        raise click.ClickException(f"{e} {e.details}")
    _print_deduction_status(status)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(sales_group)
