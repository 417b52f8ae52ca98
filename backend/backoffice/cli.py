# Overview: Flask CLI command group for bootstrap and ledger/stock consistency checks.

# backend/backoffice/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Use: python -m flask --app backoffice <group> <command> [options]
#
# Bootstrap:
# - python -m flask --app backoffice ledger init-db
#   Create all tables (idempotent; use Flask-Migrate for schema changes).
# - python -m flask --app backoffice ledger seed-accounts
#   Create the posting accounts from LEDGER_ACCOUNTS plus tax accounts.
# - python -m flask --app backoffice ledger seed-tax-codes [--effective-from 2024-01-01]
#   Create the default tax codes (GST18, GST17, WHT4, FT3, ZERO).
#
# Consistency checks (exit code 1 when a problem is found):
# - python -m flask --app backoffice ledger check-balance
#   Total debits vs credits, and every batch that does not balance.
# - python -m flask --app backoffice ledger stock-audit
#   Cached stock balances vs the sum of their movements.

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .seed import seed_accounts, seed_tax_codes
from .services import get_services
from .time_utils import parse_iso_date


@click.group('ledger')
def ledger_group():
    """Ledger bootstrap and consistency commands."""


@ledger_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created")


@ledger_group.command('seed-accounts')
@with_appcontext
def seed_accounts_command():
    created = seed_accounts(current_app.config["LEDGER_ACCOUNTS"])
    click.echo(f"PASS Accounts seeded ({created} created)")


@ledger_group.command('seed-tax-codes')
@click.option('--effective-from', default='2000-01-01', help='Effective date (YYYY-MM-DD) for new codes')
@with_appcontext
def seed_tax_codes_command(effective_from):
    try:
        start = parse_iso_date(effective_from)
    except ValueError:
        raise click.BadParameter("must be YYYY-MM-DD", param_hint="--effective-from")
    created = seed_tax_codes(start)
    click.echo(f"PASS Tax codes seeded ({created} created)")


@ledger_group.command('check-balance')
@with_appcontext
def check_balance():
    """Verify debits equal credits overall and per batch."""
    ledger = get_services().ledger
    totals = ledger.trial_balance()
    click.echo(f"Total debit:  {totals['total_debit']}")
    click.echo(f"Total credit: {totals['total_credit']}")

    unbalanced = ledger.unbalanced_batches()
    for batch in unbalanced:
        click.echo(f"FAIL batch {batch['batch_id']}: debit {batch['debit']} != credit {batch['credit']}")

    if unbalanced or not totals["balanced"]:
        raise click.ClickException("Ledger is not balanced")
    click.echo("PASS Ledger balanced")


@ledger_group.command('stock-audit')
@with_appcontext
def stock_audit():
    """Compare cached stock balances with the sum of their movements."""
    mismatches = get_services().stock.audit()
    for row in mismatches:
        click.echo(
            f"FAIL item {row['item_id']} warehouse {row['warehouse_id'] or '-'}: "
            f"cached {row['cached']} != movements {row['derived']}"
        )
    if mismatches:
        raise click.ClickException(f"{len(mismatches)} stock balance(s) out of sync")
    click.echo("PASS Stock balances match movement history")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(ledger_group)
