# Overview: Flask CLI command groups for catalog, inventory, orders, customers and maintenance.

# posoffice/cli.py
# Commands Legend:
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP (e.g. export FLASK_APP="posoffice:create_app").
# - Use: python -m flask <group> <command> [options]
#
# System:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system create-user --username admin --email admin@posoffice.local --role ADMIN
#   Create a back-office user (order attribution only; no credentials).
#
# Catalog:
# - python -m flask catalog add-category --name "Drinks" [--parent-id 1]
# - python -m flask catalog tree
# - python -m flask catalog move-category 3 --parent-id 1   (omit --parent-id to make it a root)
# - python -m flask catalog reorder 3 1 2
# - python -m flask catalog add-product --name "Cola" --category-id 1 --price 1.50 [--sku ...]
# - python -m flask catalog products [--low-stock]
# - python -m flask catalog bulk-price --delta 0.25 1 2 3
#
# Inventory:
# - python -m flask inventory stock-in 1 100 --unit-cost 0.80 --reference PO-1
# - python -m flask inventory stock-out 1 5 --reference SALE-9
# - python -m flask inventory adjust --reason "Shrink" -- 1 -3
# - python -m flask inventory return 1 2
# - python -m flask inventory stock 1
# - python -m flask inventory history 1 --page 0 --size 20
# - python -m flask inventory value [--product-id 1]
#
# Customers:
# - python -m flask customers create --name "Jane" --email jane@example.com
# - python -m flask customers list
#
# Orders:
# - python -m flask orders create --customer-id 1 --item 1:2 --item 2:1 --shipping-fee 5
# - python -m flask orders pay 1 CASH 12.50
# - python -m flask orders status 1 PROCESSING
# - python -m flask orders ship 1
# - python -m flask orders cancel 1 --reason "Customer request"
# - python -m flask orders list [--status PENDING]
#
# Domain errors print "FAIL <code>: <message>" and exit with status 1.

from functools import wraps

import click
from flask.cli import with_appcontext

from .errors import DomainError
from .extensions import db
from .models import USER_ROLES, ORDER_STATUSES
from .services import (
    category_service,
    customer_service,
    inventory_service,
    order_service,
    product_service,
    user_service,
)


def domain_errors(func):
    """Report DomainError as a FAIL line and a non-zero exit code."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DomainError as e:
            click.echo(f"FAIL {e.code}: {e}", err=True)
            raise click.exceptions.Exit(1)
    return wrapper


def _parse_item(value: str) -> dict:
    try:
        product_id, quantity = value.split(":", 1)
        return {"product_id": int(product_id), "quantity": int(quantity)}
    except ValueError:
        raise click.BadParameter(f"expected PRODUCT_ID:QUANTITY, got '{value}'")


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------

@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


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

    click.echo("PASS Database reset complete.")


@system_group.command('create-user')
@click.option('--username', required=True, help='Username')
@click.option('--email', required=True, help='Email address')
@click.option('--full-name', default=None, help='Display name')
@click.option('--role', type=click.Choice(USER_ROLES), default='STAFF', show_default=True)
@with_appcontext
@domain_errors
def create_user_cli(username, email, full_name, role):
    """Create a back-office user."""
    user = user_service.create_user({
        "username": username,
        "email": email,
        "full_name": full_name,
        "role": role,
    })
    click.echo(f"PASS Created user '{username}' (ID: {user.id}, role: {role})")


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

@click.group('catalog')
def catalog_group():
    """Categories and products."""


@catalog_group.command('add-category')
@click.option('--name', required=True)
@click.option('--description', default=None)
@click.option('--parent-id', type=int, default=None)
@click.option('--sort-order', type=int, default=None)
@with_appcontext
@domain_errors
def add_category_cli(name, description, parent_id, sort_order):
    patch = {"name": name, "description": description, "parent_id": parent_id}
    if sort_order is not None:
        patch["sort_order"] = sort_order
    category = category_service.create_category(patch)
    click.echo(f"PASS Created category '{category.name}' (ID: {category.id}, sort: {category.sort_order})")


@catalog_group.command('tree')
@with_appcontext
def category_tree_cli():
    """Print the category forest."""
    def _print(nodes, depth):
        for node in nodes:
            flag = "" if node["is_active"] else " (inactive)"
            click.echo(f"{'  ' * depth}- [{node['id']}] {node['name']}{flag}")
            _print(node["children"], depth + 1)

    _print(category_service.get_category_tree(), 0)


@catalog_group.command('move-category')
@click.argument('category_id', type=int)
@click.option('--parent-id', type=int, default=None, help='New parent (omit to make a root)')
@with_appcontext
@domain_errors
def move_category_cli(category_id, parent_id):
    category_service.move_category(category_id, parent_id)
    click.echo(f"PASS Moved category {category_id} under {parent_id if parent_id is not None else 'root'}")


@catalog_group.command('reorder')
@click.argument('category_ids', type=int, nargs=-1, required=True)
@with_appcontext
@domain_errors
def reorder_categories_cli(category_ids):
    category_service.reorder_categories(list(category_ids))
    click.echo(f"PASS Reordered {len(category_ids)} categories")


@catalog_group.command('delete-category')
@click.argument('category_id', type=int)
@with_appcontext
@domain_errors
def delete_category_cli(category_id):
    category_service.delete_category(category_id)
    click.echo(f"PASS Deleted category {category_id}")


@catalog_group.command('add-product')
@click.option('--name', required=True)
@click.option('--category-id', type=int, required=True)
@click.option('--price', required=True)
@click.option('--sku', default=None)
@click.option('--barcode', default=None)
@click.option('--cost-price', default=None)
@click.option('--tax-rate', default=None)
@click.option('--min-stock', type=int, default=None)
@with_appcontext
@domain_errors
def add_product_cli(name, category_id, price, sku, barcode, cost_price, tax_rate, min_stock):
    patch = {"name": name, "category_id": category_id, "price": price}
    optional = {
        "sku": sku,
        "barcode": barcode,
        "cost_price": cost_price,
        "tax_rate": tax_rate,
        "min_stock_level": min_stock,
    }
    patch.update({k: v for k, v in optional.items() if v is not None})
    product = product_service.create_product(patch)
    click.echo(f"PASS Created product '{product.name}' (ID: {product.id}, SKU: {product.sku})")


@catalog_group.command('products')
@click.option('--low-stock', is_flag=True, help='Only products at or below their minimum level')
@with_appcontext
def list_products_cli(low_stock):
    products = product_service.get_low_stock_products() if low_stock else product_service.list_products()
    levels = inventory_service.get_stock_levels([p.id for p in products])

    click.echo("\n" + "=" * 80)
    click.echo(f"{'ID':<5} {'SKU':<16} {'Name':<30} {'Price':>10} {'Stock':>8} Status")
    click.echo("=" * 80)
    for p in products:
        click.echo(f"{p.id:<5} {p.sku:<16} {p.name[:30]:<30} {str(p.price):>10} {levels[p.id]:>8} {p.status}")
    click.echo("=" * 80 + "\n")


@catalog_group.command('bulk-price')
@click.option('--delta', required=True, help='Amount added to each price (may be negative)')
@click.argument('product_ids', type=int, nargs=-1, required=True)
@with_appcontext
@domain_errors
def bulk_price_cli(delta, product_ids):
    updated = product_service.bulk_update_prices(list(product_ids), delta)
    click.echo(f"PASS Updated prices for {len(updated)} products")


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------

@click.group('inventory')
def inventory_group():
    """Stock ledger movements and reports."""


@inventory_group.command('stock-in')
@click.argument('product_id', type=int)
@click.argument('quantity', type=int)
@click.option('--unit-cost', default=None)
@click.option('--reference', default=None)
@with_appcontext
@domain_errors
def stock_in_cli(product_id, quantity, unit_cost, reference):
    tx = inventory_service.record_stock_in(product_id, quantity, unit_cost, reference)
    click.echo(f"PASS IN #{tx.id}: product {product_id} now at {inventory_service.get_current_stock(product_id)}")


@inventory_group.command('stock-out')
@click.argument('product_id', type=int)
@click.argument('quantity', type=int)
@click.option('--unit-cost', default=None)
@click.option('--reference', default=None)
@with_appcontext
@domain_errors
def stock_out_cli(product_id, quantity, unit_cost, reference):
    tx = inventory_service.record_stock_out(product_id, quantity, unit_cost, reference)
    click.echo(f"PASS OUT #{tx.id}: product {product_id} now at {inventory_service.get_current_stock(product_id)}")


@inventory_group.command('adjust')
@click.argument('product_id', type=int)
@click.argument('quantity', type=int)
@click.option('--reason', default=None)
@with_appcontext
@domain_errors
def adjust_cli(product_id, quantity, reason):
    tx = inventory_service.record_stock_adjustment(product_id, quantity, None, reason)
    click.echo(f"PASS ADJUSTMENT #{tx.id}: product {product_id} now at {inventory_service.get_current_stock(product_id)}")


@inventory_group.command('return')
@click.argument('product_id', type=int)
@click.argument('quantity', type=int)
@click.option('--unit-cost', default=None)
@click.option('--reference', default=None)
@with_appcontext
@domain_errors
def return_cli(product_id, quantity, unit_cost, reference):
    tx = inventory_service.record_stock_return(product_id, quantity, unit_cost, reference)
    click.echo(f"PASS RETURN #{tx.id}: product {product_id} now at {inventory_service.get_current_stock(product_id)}")


@inventory_group.command('stock')
@click.argument('product_id', type=int)
@with_appcontext
@domain_errors
def stock_cli(product_id):
    summary = inventory_service.get_inventory_summary(product_id)
    low = " LOW" if summary["is_low_stock"] else ""
    click.echo(
        f"Product {product_id} ({summary['sku']}): {summary['current_stock']} on hand, "
        f"value {summary['inventory_value']}{low}"
    )


@inventory_group.command('history')
@click.argument('product_id', type=int)
@click.option('--page', type=int, default=0, show_default=True)
@click.option('--size', type=int, default=20, show_default=True)
@with_appcontext
@domain_errors
def history_cli(product_id, page, size):
    for tx in inventory_service.get_transaction_history(product_id, page, size):
        click.echo(
            f"{tx.id:<6} {tx.transaction_type:<11} {tx.quantity_delta:>+7} "
            f"{tx.reference_type or '-':<10} {tx.reference_id or '-':<16} {tx.notes or ''}"
        )


@inventory_group.command('value')
@click.option('--product-id', type=int, default=None)
@with_appcontext
@domain_errors
def value_cli(product_id):
    if product_id is None:
        click.echo(f"Total inventory value: {inventory_service.get_total_inventory_value()}")
    else:
        click.echo(f"Inventory value for product {product_id}: {inventory_service.get_inventory_value(product_id)}")


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------

@click.group('customers')
def customers_group():
    """Customer accounts."""


@customers_group.command('create')
@click.option('--name', required=True)
@click.option('--email', default=None)
@click.option('--phone', 'phone_number', default=None)
@click.option('--credit-limit', default=None)
@with_appcontext
@domain_errors
def create_customer_cli(name, email, phone_number, credit_limit):
    patch = {"name": name, "email": email, "phone_number": phone_number}
    if credit_limit is not None:
        patch["credit_limit"] = credit_limit
    customer = customer_service.create_customer(patch)
    click.echo(f"PASS Created customer '{customer.name}' (ID: {customer.id}, code: {customer.customer_code})")


@customers_group.command('list')
@with_appcontext
def list_customers_cli():
    for c in customer_service.list_customers():
        active_str = "Yes" if c.is_active else "No"
        click.echo(f"{c.id:<5} {c.customer_code:<10} {c.name:<30} {c.email or '-':<30} {active_str}")


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

@click.group('orders')
def orders_group():
    """Order lifecycle."""


@orders_group.command('create')
@click.option('--customer-id', type=int, default=None)
@click.option('--user-id', 'created_by_user_id', type=int, default=None)
@click.option('--item', 'items', multiple=True, help='PRODUCT_ID:QUANTITY (repeatable)')
@click.option('--shipping-fee', default=None)
@click.option('--tax-amount', default=None)
@click.option('--discount', 'discount_amount', default=None)
@click.option('--address', 'shipping_address', default=None)
@with_appcontext
@domain_errors
def create_order_cli(customer_id, created_by_user_id, items, shipping_fee, tax_amount, discount_amount, shipping_address):
    patch = {
        "customer_id": customer_id,
        "created_by_user_id": created_by_user_id,
        "shipping_fee": shipping_fee,
        "tax_amount": tax_amount,
        "discount_amount": discount_amount,
        "shipping_address": shipping_address,
        "items": [_parse_item(v) for v in items],
    }
    order = order_service.create_order(patch)
    click.echo(f"PASS Created order {order.order_number} (ID: {order.id}, total: {order.total_amount})")


@orders_group.command('status')
@click.argument('order_id', type=int)
@click.argument('status', type=click.Choice(ORDER_STATUSES))
@with_appcontext
@domain_errors
def order_status_cli(order_id, status):
    order = order_service.update_order_status(order_id, status)
    click.echo(f"PASS Order {order.order_number} is now {order.status}")


@orders_group.command('pay')
@click.argument('order_id', type=int)
@click.argument('method')
@click.argument('amount')
@with_appcontext
@domain_errors
def pay_order_cli(order_id, method, amount):
    order = order_service.process_payment(order_id, method, amount)
    click.echo(f"PASS Order {order.order_number} paid ({order.paid_amount}) and {order.status}")


@orders_group.command('ship')
@click.argument('order_id', type=int)
@with_appcontext
@domain_errors
def ship_order_cli(order_id):
    order = order_service.ship_order(order_id)
    click.echo(f"PASS Order {order.order_number} shipped")


@orders_group.command('cancel')
@click.argument('order_id', type=int)
@click.option('--reason', default=None)
@with_appcontext
@domain_errors
def cancel_order_cli(order_id, reason):
    order = order_service.cancel_order(order_id, reason)
    click.echo(f"PASS Order {order.order_number} cancelled")


@orders_group.command('list')
@click.option('--status', type=click.Choice(ORDER_STATUSES), default=None)
@with_appcontext
def list_orders_cli(status):
    orders = order_service.get_orders_by_status(status) if status else order_service.list_orders()
    for o in orders:
        click.echo(f"{o.id:<5} {o.order_number:<10} {o.status:<11} {str(o.total_amount):>12} {o.payment_status or '-'}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(catalog_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(customers_group)
    app.cli.add_command(orders_group)
