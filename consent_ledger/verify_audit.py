"""
Audit chain verification command
Walks the stored hash chain and exits non-zero at the first divergent entry
"""

import sys
from typing import Optional

import click
import structlog

from .audit.ledger import AuditLedger, ChainVerification
from .config import configure_logging, get_ledger_config
from .database import Database
from .exceptions import AuditChainError

logger = structlog.get_logger(__name__)


def assert_chain(ledger: AuditLedger) -> ChainVerification:
    """
    Verify the ledger and raise if it does not hold.

    Raises:
        AuditChainError: At the first divergent entry
    """
    result = ledger.verify()
    if not result.valid:
        raise AuditChainError(
            audit_id=result.first_invalid_audit_id,
            index=result.first_invalid_index,
            reason=result.reason,
        )
    return result


@click.command()
@click.option("--database-url", default=None, help="Database to verify (default: configured database_url)")
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def main(database_url: Optional[str], debug: bool) -> None:
    """Verify the consent ledger's audit hash chain."""
    configure_logging("DEBUG" if debug else "WARNING")

    database = Database(database_url or get_ledger_config().database_url)
    ledger = AuditLedger(database)

    try:
        result = assert_chain(ledger)
    except AuditChainError as e:
        click.echo("Audit chain verification failed", err=True)
        click.echo(f"  entry index: {e.details.get('index')}", err=True)
        click.echo(f"  audit id:    {e.details.get('audit_id')}", err=True)
        click.echo(f"  reason:      {e.details.get('reason')}", err=True)
        sys.exit(1)

    click.echo(f"Audit chain verified successfully ({result.entries_checked} entries)")
    sys.exit(0)


if __name__ == "__main__":
    main()
