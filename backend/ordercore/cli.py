# Overview: Flask CLI command groups for inspection, scheduled sweeps and maintenance.

# backend/ordercore/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Inventory:
# - python -m flask inventory audit [--variant-id 3]
#   Compare every variant's counters with the sum of its movements.
#
# Settlements:
# - python -m flask settlements init --date 2024-05-01 [--rider-id 7]
#   Create (idempotently) the day's pending settlement for one or all active riders.
#
# Archive:
# - python -m flask archive sweep
#   Archive terminal leads/orders that have no archive record yet.
#
# System:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).

import click
from flask.cli import with_appcontext

from .errors import EngineError
from .extensions import db
from .models import Rider
from .services import archive_service, inventory_service, settlement_service
from .time_utils import utcnow


@click.group('inventory')
def inventory_group():
    """Inventory ledger inspection."""


@inventory_group.command('audit')
@click.option('--variant-id', type=int, default=None, help='Audit a single variant')
@with_appcontext
def audit_inventory(variant_id):
    """Report variants whose counters disagree with their movement history."""
    if variant_id is not None:
        try:
            reports = [inventory_service.audit_variant(variant_id)]
        except EngineError as e:
            click.echo(f"FAIL {e.message}")
            raise SystemExit(1)
    else:
        reports = inventory_service.audit_all()

    failing = [report for report in reports if not report["ok"]]
    if not failing:
        click.echo("PASS All audited variants match their movement history")
        return

    for report in failing:
        click.echo(f"FAIL variant {report['variant_id']} ({report.get('sku')}):")
        for problem in report["problems"]:
            click.echo(f"     - {problem}")
    raise SystemExit(1)


@click.group('settlements')
def settlements_group():
    """Rider COD settlement commands."""


@settlements_group.command('init')
@click.option('--date', 'settlement_day', type=click.DateTime(formats=['%Y-%m-%d']), default=None,
              help='Settlement date (YYYY-MM-DD), default today')
@click.option('--rider-id', type=int, default=None, help='Only this rider')
@with_appcontext
def init_settlements(settlement_day, rider_id):
    """Create the day's pending settlement for each active rider (safe to re-run)."""
    settlement_date = settlement_day.date() if settlement_day else utcnow().date()
    if rider_id is not None:
        rider_ids = [rider_id]
    else:
        rider_ids = [r.id for r in db.session.query(Rider).filter_by(is_active=True).order_by(Rider.id)]

    for rid in rider_ids:
        try:
            settlement = settlement_service.init_rider_settlement(rid, settlement_date)
        except EngineError as e:
            click.echo(f"FAIL rider {rid}: {e.message}")
            continue
        click.echo(
            f"PASS {settlement.settlement_number} rider={rid} orders={settlement.total_orders} "
            f"expected={settlement.total_cod_expected_cents} status={settlement.status}"
        )


@click.group('archive')
def archive_group():
    """Archive maintenance."""


@archive_group.command('sweep')
@with_appcontext
def sweep_archive():
    """Archive terminal leads and orders that have no archive record yet."""
    result = archive_service.sweep_archive()
    click.echo(f"PASS Archived {result['orders']} orders and {result['leads']} leads")


@click.group('system')
def system_group():
    """System maintenance commands."""


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

    click.echo("PASS Database reset complete")


def register_commands(app):
    app.cli.add_command(inventory_group)
    app.cli.add_command(settlements_group)
    app.cli.add_command(archive_group)
    app.cli.add_command(system_group)
