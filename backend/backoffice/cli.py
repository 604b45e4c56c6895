# Overview: Flask CLI command groups for bootstrap, user tokens, and stock maintenance.

# backend/backoffice/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--admin-password "Password123!"]
#   Idempotent bootstrap: creates tables and a default admin user.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users and API tokens:
# - python -m flask users list
# - python -m flask users create --username clerk --email clerk@shop.local --password "Password123!" --role inventory_manager
# - python -m flask users issue-token --username clerk [--password "Password123!"]
#   Checks the password, then prints a bearer token for the API (shown once, stored hashed).
# - python -m flask users revoke-token --token <token>
#
# Maintenance (cron: 0 0 * * *  python -m flask maintenance daily):
# - python -m flask maintenance reconcile-stock [--dry-run]
#   Recompute cached variant stock from the stock ledger.
# - python -m flask maintenance deactivate-expired
#   Mark expired ACTIVE variants INACTIVE.
# - python -m flask maintenance daily
#   Both of the above.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import User
from .models.auth import ROLE_ADMIN, ROLES
from .services.auth_service import authenticate, create_user, PasswordValidationError, UserValidationError
from .services import maintenance_service, session_service, variant_service


DEFAULT_ADMIN_USERNAME = "admin"
DEFAULT_ADMIN_EMAIL = "admin@backoffice.local"


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--admin-password', default='Password123!', help='Password for the default admin user')
@with_appcontext
def init_system(admin_password):
    """
    Create all tables and the default admin user.

    SECURITY: Change the admin password immediately in production!
    """
    click.echo("START Initializing back-office...")

    db.create_all()
    click.echo("PASS Database schema ready")

    admin = db.session.query(User).filter_by(username=DEFAULT_ADMIN_USERNAME).first()
    if admin:
        click.echo(f"PASS Using existing admin user (ID: {admin.id})")
        return

    try:
        admin = create_user(
            username=DEFAULT_ADMIN_USERNAME,
            password=admin_password,
            role=ROLE_ADMIN,
            email=DEFAULT_ADMIN_EMAIL,
        )
    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {e}")
        return

    click.echo(f"PASS Created admin user: {admin.username} (ID: {admin.id})")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including the stock ledger!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('list')
@with_appcontext
def list_users():
    users = db.session.query(User).order_by(User.id.asc()).all()
    if not users:
        click.echo("No users found.")
        return
    for user in users:
        state = "active" if user.is_active else "inactive"
        click.echo(f"{user.id:>4}  {user.username:<20} {user.role:<18} {state}")


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--email', default=None, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(sorted(ROLES)), prompt=True, help='Role')
@with_appcontext
def create_user_cli(username, email, password, role):
    """
    Create a new user.

    Password must meet strength requirements:
    - Minimum 8 characters
    - At least one letter
    - At least one digit
    """
    try:
        user = create_user(username=username, password=password, role=role, email=email)
    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {e}")
        click.echo("Requirements: 8+ chars, at least one letter and one digit")
        return
    except UserValidationError as e:
        click.echo(f"FAIL {e}")
        return

    click.echo(f"PASS Created user: {user.username} with role '{user.role}' (ID: {user.id})")
    click.echo("SECURITY Password securely hashed with bcrypt")


@users_group.command('issue-token')
@click.option('--username', required=True, help='Username')
@click.option('--password', prompt=True, hide_input=True, help='Password')
@with_appcontext
def issue_token_cli(username, password):
    """Issue an API bearer token. The token is printed once and stored hashed."""
    user = authenticate(username, password)
    if not user:
        click.echo("FAIL Invalid credentials or inactive user")
        return
    try:
        session, token = session_service.create_session(user.id)
    except ValueError as e:
        click.echo(f"FAIL {e}")
        return

    click.echo(f"PASS Token for {user.username} (expires {session.expires_at.isoformat()}Z):")
    click.echo(token)


@users_group.command('revoke-token')
@click.option('--token', required=True, help='Bearer token to revoke')
@with_appcontext
def revoke_token_cli(token):
    if session_service.revoke_session(token):
        click.echo("PASS Token revoked")
    else:
        click.echo("FAIL Token not found or already revoked")


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('reconcile-stock')
@click.option('--dry-run', is_flag=True, help='Report drift without fixing it')
@with_appcontext
def reconcile_stock_cli(dry_run):
    """Recompute cached variant stock from the stock ledger."""
    drift = maintenance_service.reconcile_stock_quantities(fix=not dry_run)
    if not drift:
        click.echo("PASS Cached stock matches the ledger for every variant")
        return

    for entry in drift:
        action = "fixed" if entry["fixed"] else "not fixed"
        click.echo(
            f"DRIFT variant {entry['variant_id']} ({entry['sku'] or '-'}): "
            f"cached {entry['cached_quantity']}, ledger {entry['ledger_quantity']} [{action}]"
        )
    click.echo(f"Found {len(drift)} drifted variants.")


@maintenance_group.command('deactivate-expired')
@with_appcontext
def deactivate_expired_cli():
    changed = variant_service.deactivate_expired_variants()
    click.echo(f"Deactivated {changed} expired variants.")


@maintenance_group.command('daily')
@with_appcontext
def daily_cli():
    """Nightly job for cron: expiry sweep, then stock reconciliation."""
    result = maintenance_service.run_daily_maintenance()
    fixed = sum(1 for entry in result["drift"] if entry["fixed"])
    click.echo(f"Deactivated {result['deactivated']} expired variants.")
    click.echo(f"Reconciled {fixed} of {len(result['drift'])} drifted variants.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(maintenance_group)
