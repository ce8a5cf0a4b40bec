# Overview: Flask CLI command groups for bootstrap, inspection, and ledger audits.

# backend/kirana/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--admin-username admin --admin-email admin@kirana.local]
#   Idempotent bootstrap: roles, default loyalty settings, first admin.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users (identities mirrored from the auth provider):
# - python -m flask users list
# - python -m flask users create --username ravi --email ravi@example.com --role delivery_boy
# - python -m flask users grant-role ravi staff
#
# Coupons:
# - python -m flask coupons list [--active-only]
# - python -m flask coupons create --code SAVE20 --type percentage --value 2000 --max-discount-cents 10000
#
# Ledgers:
# - python -m flask ledger verify [--user-id 5]
#   Replay wallet and loyalty transactions; exits 1 on drift.
#
# Orders:
# - python -m flask orders list [--status pending] [--limit 20]

import sys

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import User, LoyaltySettings
from .models.auth import VALID_ROLES, ROLE_ADMIN
from .services import coupon_service, ledger_service, order_service, user_service
from .services.loyalty_service import DEFAULT_SETTINGS
from .validation import ValidationError, ConflictError
from .time_utils import to_utc_z


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--admin-username', default='admin', help='Username of the first admin')
@click.option('--admin-email', default='admin@kirana.local', help='Email of the first admin')
@with_appcontext
def init_system(admin_username, admin_email):
    """
    Initialize roles, loyalty settings and a first admin user.

    Safe to re-run; existing rows are left alone.
    """
    click.echo("START Initializing kirana order engine...")

    user_service.create_default_roles()
    click.echo(f"PASS Roles ensured: {', '.join(sorted(VALID_ROLES))}")

    if db.session.query(LoyaltySettings).first() is None:
        db.session.add(LoyaltySettings(**DEFAULT_SETTINGS))
        db.session.commit()
        click.echo("PASS Created default loyalty settings")
    else:
        click.echo("PASS Using existing loyalty settings")

    admin = db.session.query(User).filter_by(username=admin_username).first()
    if admin is None:
        admin = user_service.create_user(admin_username, admin_email, roles=(ROLE_ADMIN,))
        click.echo(f"PASS Created admin user: {admin.username} (ID: {admin.id})")
    else:
        user_service.assign_role(admin.id, ROLE_ADMIN)
        click.echo(f"PASS Using existing admin user: {admin.username} (ID: {admin.id})")

    click.echo("\nDONE System initialized.")


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

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


# =============================================================================
# USERS
# =============================================================================

@click.group('users')
def users_group():
    """User inspection and bootstrap."""


@users_group.command('list')
@with_appcontext
def list_users():
    """List all users with their roles."""
    users = db.session.query(User).order_by(User.id).all()
    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "=" * 90)
    click.echo(f"{'ID':<5} {'Username':<20} {'Email':<30} {'Active':<8} {'Roles'}")
    click.echo("=" * 90)
    for user in users:
        roles_str = ", ".join(sorted(user.role_names())) or "none"
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {user.username:<20} {user.email:<30} {active_str:<8} {roles_str}")
    click.echo("=" * 90 + "\n")


@users_group.command('create')
@click.option('--username', prompt=True)
@click.option('--email', prompt=True)
@click.option('--phone', default=None)
@click.option('--role', 'roles', multiple=True, type=click.Choice(sorted(VALID_ROLES)), default=['user'])
@with_appcontext
def create_user_cmd(username, email, phone, roles):
    """Create a user (roles default to shopper)."""
    user_service.create_default_roles()
    try:
        user = user_service.create_user(username, email, phone=phone, roles=tuple(roles))
    except ValueError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created user {user.username} (ID: {user.id}) with roles: {', '.join(sorted(user.role_names()))}")


@users_group.command('grant-role')
@click.argument('username')
@click.argument('role_name', type=click.Choice(sorted(VALID_ROLES)))
@with_appcontext
def grant_role(username, role_name):
    """Grant a role to a user."""
    user = db.session.query(User).filter_by(username=username).first()
    if user is None:
        raise click.ClickException(f"User {username} not found")
    user_service.create_default_roles()
    user_service.assign_role(user.id, role_name)
    click.echo(f"PASS Granted {role_name} to {username}")


# =============================================================================
# COUPONS
# =============================================================================

@click.group('coupons')
def coupons_group():
    """Coupon inspection and bootstrap."""


@coupons_group.command('list')
@click.option('--active-only', is_flag=True)
@with_appcontext
def list_coupons(active_only):
    coupons = coupon_service.list_coupons(active_only=active_only)
    if not coupons:
        click.echo("No coupons found.")
        return
    click.echo(f"{'ID':<5} {'Code':<16} {'Type':<11} {'Value':>8} {'Used':>10} {'Active':<7} {'Valid until'}")
    for c in coupons:
        used = f"{c.used_count}/{c.usage_limit if c.usage_limit is not None else '-'}"
        click.echo(
            f"{c.id:<5} {c.code:<16} {c.discount_type:<11} {c.discount_value:>8} {used:>10} "
            f"{'Yes' if c.is_active else 'No':<7} {to_utc_z(c.valid_until) or '-'}"
        )


@coupons_group.command('create')
@click.option('--code', required=True)
@click.option('--type', 'discount_type', type=click.Choice(['percentage', 'fixed']), required=True)
@click.option('--value', 'discount_value', type=int, required=True, help='Basis points or paise')
@click.option('--min-order-cents', type=int, default=None)
@click.option('--max-discount-cents', type=int, default=None)
@click.option('--usage-limit', type=int, default=None)
@click.option('--per-user-limit', type=int, default=None)
@click.option('--description', default=None)
@with_appcontext
def create_coupon_cmd(code, discount_type, discount_value, min_order_cents, max_discount_cents,
                      usage_limit, per_user_limit, description):
    payload = {
        "code": code,
        "discount_type": discount_type,
        "discount_value": discount_value,
        "min_order_cents": min_order_cents,
        "max_discount_cents": max_discount_cents,
        "usage_limit": usage_limit,
        "per_user_limit": per_user_limit,
        "description": description,
    }
    try:
        coupon = coupon_service.create_coupon(payload)
    except (ValidationError, ConflictError) as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created coupon {coupon.code} (ID: {coupon.id})")


# =============================================================================
# LEDGERS
# =============================================================================

@click.group('ledger')
def ledger_group():
    """Ledger audits."""


@ledger_group.command('verify')
@click.option('--user-id', type=int, default=None)
@with_appcontext
def verify_ledgers(user_id):
    """Replay wallet and loyalty ledgers against stored balances."""
    failed = False
    for name, report in (
        ("wallets", ledger_service.verify_wallet_ledger(user_id)),
        ("loyalty", ledger_service.verify_loyalty_ledger(user_id)),
    ):
        if report.ok:
            click.echo(f"PASS {name}: {report.checked} checked, no drift")
            continue
        failed = True
        click.echo(f"FAIL {name}: {len(report.drift)} mismatches in {report.checked} checked")
        for d in report.drift:
            click.echo(f"  user {d.user_id} {d.field}: stored {d.stored}, replayed {d.replayed}")
    if failed:
        sys.exit(1)


# =============================================================================
# ORDERS
# =============================================================================

@click.group('orders')
def orders_group():
    """Order inspection."""


@orders_group.command('list')
@click.option('--status', default=None)
@click.option('--limit', type=int, default=20)
@with_appcontext
def list_orders_cmd(status, limit):
    try:
        orders = order_service.list_orders(status=status, limit=limit)
    except order_service.OrderValidationError as e:
        raise click.ClickException(str(e))
    if not orders:
        click.echo("No orders found.")
        return
    click.echo(f"{'ID':<6} {'User':<6} {'Status':<17} {'Payment':<21} {'Total':>10} {'Created'}")
    for o in orders:
        click.echo(
            f"{o.id:<6} {o.user_id:<6} {o.status:<17} {o.payment_status:<21} "
            f"{o.total_price_cents / 100:>10.2f} {to_utc_z(o.created_at)}"
        )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(coupons_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(orders_group)
