# Overview: Flask CLI command groups for bootstrap, replication and integrity checks.

# backend/tavola/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init [--branch-code MAIN --branch-name "Main Branch"]
#   Idempotent: creates tables, chart of accounts, default branch, warehouses and users.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users:
# - python -m flask users create --username cashier2 --name "Cashier Two" --role CASHIER --branch-id 1
#
# Offline sync queue:
# - python -m flask sync stats
# - python -m flask sync drain [--limit 100]
# - python -m flask sync retry <item_id>
# - python -m flask sync watch --interval 10
#   Drains whenever the upstream reports healthy (Ctrl+C to stop).
#
# Integrity:
# - python -m flask audit verify [--limit 1000]
#   Lists audit records whose signature no longer matches.
# - python -m flask ledger trial-balance

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Branch, User, Warehouse, WarehouseType
from .permissions import UserRole
from .services import audit_service, ledger_service, sync_service
from .services.auth_service import create_user, PasswordValidationError, UserError
from .services.sync_service import SyncError


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--branch-code', default='MAIN', help='Default branch code')
@click.option('--branch-name', default='Main Branch', help='Default branch name')
@with_appcontext
def init_system(branch_code, branch_name):
    """
    Initialize a branch node: schema, chart of accounts, default branch with
    a main warehouse and a kitchen warehouse (the consumption warehouse), and
    default users. All passwords default to "Password123!".

    SECURITY: Change passwords immediately in production!
    """
    click.echo("START Initializing Tavola branch node...")

    db.create_all()

    created = ledger_service.ensure_chart_of_accounts()
    click.echo(f"PASS Chart of accounts ready ({created} accounts created)")

    branch = db.session.query(Branch).filter_by(code=branch_code).first()
    if not branch:
        branch = Branch(code=branch_code, name=branch_name, is_active=True)
        db.session.add(branch)
        db.session.flush()
        main = Warehouse(branch_id=branch.id, name=f"{branch_name} Store", type=WarehouseType.MAIN)
        kitchen = Warehouse(branch_id=branch.id, name=f"{branch_name} Kitchen", type=WarehouseType.KITCHEN)
        db.session.add_all([main, kitchen])
        db.session.flush()
        branch.consumption_warehouse_id = kitchen.id
        db.session.commit()
        click.echo(f"PASS Created branch: {branch.name} (ID: {branch.id}, Code: {branch.code})")
    else:
        click.echo(f"PASS Using existing branch: {branch.name} (ID: {branch.id})")

    default_password = "Password123!"
    default_users = [
        ("admin", "Administrator", UserRole.SUPER_ADMIN, None),
        ("manager", "Branch Manager", UserRole.BRANCH_MANAGER, branch.id),
        ("cashier", "Cashier", UserRole.CASHIER, branch.id),
        ("kitchen", "Kitchen", UserRole.KITCHEN_STAFF, branch.id),
    ]

    for username, name, role, branch_id in default_users:
        if db.session.query(User).filter_by(username=username).first():
            click.echo(f"WARN  User '{username}' already exists, skipping...")
            continue
        try:
            create_user(username=username, name=name, password=default_password, role=role, branch_id=branch_id)
            click.echo(f"PASS Created user: {username} with role '{role}'")
        except (PasswordValidationError, UserError) as e:
            db.session.rollback()
            click.echo(f"FAIL Failed to create user '{username}': {e}")

    click.echo("DONE Tavola branch node initialized")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """DANGER: Drop all tables and recreate schema."""
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    db.drop_all()
    db.create_all()
    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


@click.group('users')
def users_group():
    """Staff user commands."""


@users_group.command('create')
@click.option('--username', prompt=True)
@click.option('--name', prompt=True)
@click.option('--role', type=click.Choice(UserRole.ALL), prompt=True)
@click.option('--branch-id', type=int, default=None)
@click.option('--email', default=None)
@click.password_option()
@with_appcontext
def create_user_cmd(username, name, role, branch_id, email, password):
    try:
        user = create_user(
            username=username,
            name=name,
            password=password,
            role=role,
            branch_id=branch_id,
            email=email,
        )
    except (PasswordValidationError, UserError) as e:
        db.session.rollback()
        raise click.ClickException(str(e))
    click.echo(f"PASS Created user {user.username} (ID: {user.id}, role {user.role})")


@click.group('sync')
def sync_group():
    """Offline replication queue."""


@sync_group.command('stats')
@with_appcontext
def sync_stats():
    stats = sync_service.get_queue_stats()
    click.echo(
        f"total={stats['total']} pending={stats['pending']} "
        f"failed={stats['failed']} synced={stats['synced']}"
    )
    for item in sync_service.list_items(status="FAILED", limit=20):
        click.echo(f"  FAILED #{item.id} {item.entity_type}/{item.entity_id} {item.operation}: {item.last_error}")


@sync_group.command('drain')
@click.option('--limit', type=int, default=None, help='Max items to attempt')
@with_appcontext
def sync_drain(limit):
    result = sync_service.drain_queue(limit=limit)
    click.echo(
        f"attempted={result['attempted']} synced={result['synced']} failed={result['failed']} "
        f"deferred={result['deferred']} aborted={result['aborted']}"
    )


@sync_group.command('retry')
@click.argument('item_id', type=int)
@with_appcontext
def sync_retry(item_id):
    try:
        item = sync_service.retry_item(item_id)
    except SyncError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Item #{item.id} queued again")


@sync_group.command('watch')
@click.option('--interval', type=float, default=10.0, show_default=True, help='Seconds between cycles')
@click.option('--max-cycles', type=int, default=None, help='Stop after N cycles')
@with_appcontext
def sync_watch(interval, max_cycles):
    click.echo(f"Watching upstream every {interval}s (Ctrl+C to stop)")
    sync_service.watch(interval=interval, max_cycles=max_cycles, echo=lambda r: click.echo(str(r)))


@click.group('audit')
def audit_group():
    """Audit trail integrity."""


@audit_group.command('verify')
@click.option('--limit', type=int, default=None, help='Check only the first N records')
@with_appcontext
def audit_verify(limit):
    tampered = audit_service.find_tampered(limit=limit)
    if not tampered:
        click.echo("PASS All checked audit records verify")
        return
    for log in tampered:
        click.echo(f"FAIL #{log.id} {log.log_uid} {log.event_type} at {log.created_at.isoformat()}")
    raise click.ClickException(f"{len(tampered)} tampered audit record(s)")


@click.group('ledger')
def ledger_group():
    """Financial ledger reports."""


@ledger_group.command('trial-balance')
@with_appcontext
def ledger_trial_balance():
    tb = ledger_service.trial_balance()
    for row in tb["accounts"]:
        click.echo(f"{row['code']:<8} {row['name']:<32} {row['debit_cents']:>12} {row['credit_cents']:>12}")
    click.echo(f"{'TOTAL':<41} {tb['total_debits_cents']:>12} {tb['total_credits_cents']:>12}")
    click.echo("PASS Balanced" if tb["balanced"] else "FAIL Not balanced")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(sync_group)
    app.cli.add_command(audit_group)
    app.cli.add_command(ledger_group)
