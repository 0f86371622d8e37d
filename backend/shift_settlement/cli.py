# Overview: Flask CLI command groups for bootstrap, shift inspection, and settlement.

# backend/shift_settlement/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to shift_settlement (PowerShell: $env:FLASK_APP="shift_settlement").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Shift inspection and settlement:
# - python -m flask shifts list [--store-id 1] [--status OPEN] [--limit 20]
#   List recent shifts.
# - python -m flask shifts transitions CLOSING
#   Show allowed transitions and predicates for a status.
# - python -m flask shifts settle 12 --closed-by mgr-7 --closing 31:045 --closing 32:100
#   Settle lottery for a shift with scanned ending serials (PACK_ID:SERIAL).

import click
from flask.cli import with_appcontext

from .extensions import db
from .validation import NotFoundError, ValidationError


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db_cli():
    """Create all tables."""
    db.create_all()
    click.echo("PASS Database tables created")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Confirm destructive reset')
@with_appcontext
def reset_db_cli(yes):
    """DEV/TEST only: drop and recreate all tables."""
    if not yes:
        click.echo("FAIL Refusing to reset without --yes")
        raise SystemExit(1)
    db.drop_all()
    db.create_all()
    click.echo("PASS Database reset")


@click.group('shifts')
def shifts_group():
    """Shift inspection and lottery settlement commands."""


@shifts_group.command('list')
@click.option('--store-id', type=int, help='Filter by store ID')
@click.option('--status', type=click.Choice([
    'NOT_STARTED', 'OPEN', 'ACTIVE', 'CLOSING', 'RECONCILING', 'VARIANCE_REVIEW', 'CLOSED',
]), help='Filter by status')
@click.option('--limit', type=int, default=20, help='Max shifts to show')
@with_appcontext
def list_shifts_cli(store_id, status, limit):
    """
    List recent shifts.

    Example:
        flask shifts list
        flask shifts list --store-id 1 --status OPEN
    """
    from .services import shift_service

    shifts = shift_service.list_shifts(store_id=store_id, status=status, limit=limit)
    if not shifts:
        click.echo("No shifts found.")
        return

    click.echo("\n" + "="*90)
    click.echo(f"{'ID':<6} {'Store':<7} {'Cashier':<20} {'Status':<17} {'Opened':<22} {'Variance'}")
    click.echo("="*90)
    for shift in shifts:
        data = shift.to_dict()
        variance = "" if shift.variance_cents is None else f"{shift.variance_cents/100:.2f}"
        click.echo(
            f"{shift.id:<6} {shift.store_id:<7} {shift.cashier_id:<20} {shift.status:<17} "
            f"{data['opened_at'] or '-':<22} {variance}"
        )
    click.echo("="*90 + "\n")


@shifts_group.command('transitions')
@click.argument('status')
@with_appcontext
def transitions_cli(status):
    """
    Show what a shift in STATUS may do next.

    Example:
        flask shifts transitions OPEN
    """
    from .services import shift_state_machine as ssm

    try:
        allowed = ssm.get_allowed_transitions(status)
    except ValidationError as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)

    click.echo(f"{status}: {ssm.get_status_description(status)}")
    click.echo(f"  Allowed transitions: {', '.join(s.value for s in allowed) or '(terminal)'}")
    click.echo(f"  Working:       {ssm.is_working_status(status)}")
    click.echo(f"  Unclosed:      {ssm.is_unclosed_status(status)}")
    click.echo(f"  Activate pack: {ssm.can_activate_pack(status)}")
    click.echo(f"  Close pack:    {ssm.can_close_pack(status)}")


def _parse_closing_option(value: str) -> dict:
    pack_id, sep, serial = value.partition(":")
    if not sep:
        raise click.BadParameter(f"expected PACK_ID:SERIAL, got {value!r}")
    return {"pack_id": pack_id, "closing_serial": serial, "entry_method": "SCAN"}


@shifts_group.command('settle')
@click.argument('shift_id', type=int)
@click.option('--closed-by', required=True, help='Actor id closing the shift')
@click.option('--closing', 'closing_values', multiple=True, help='Scanned closing as PACK_ID:SERIAL (repeatable)')
@with_appcontext
def settle_cli(shift_id, closed_by, closing_values):
    """
    Settle lottery packs for a shift.

    Example:
        flask shifts settle 12 --closed-by mgr-7 --closing 31:045
    """
    from .services.settlement_service import close_lottery_for_shift
    from .services.shift_state_machine import StateMachineViolation

    closings = [_parse_closing_option(value) for value in closing_values]

    try:
        result = close_lottery_for_shift(shift_id, closings, closed_by)
    except (ValidationError, NotFoundError, StateMachineViolation) as e:
        click.echo(f"FAIL {e.code}: {e}")
        raise SystemExit(1)

    click.echo(f"PASS Settled shift {shift_id}")
    click.echo(f"   Packs closed:   {result.packs_closed}")
    click.echo(f"   Packs depleted: {result.packs_depleted}")
    click.echo(f"   Tickets sold:   {result.total_tickets_sold}")
    if result.already_closed_pack_ids:
        click.echo(f"   Already closed: {', '.join(str(p) for p in result.already_closed_pack_ids)}")
    for variance in result.variances:
        click.echo(
            f"   VARIANCE pack {variance.pack_number}: expected {variance.expected}, "
            f"actual {variance.actual}, difference {variance.difference:+d}"
        )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(shifts_group)
