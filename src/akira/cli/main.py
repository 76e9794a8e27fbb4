"""
AKIRA CLI - Main entry point

Operator commands that run directly against the configured store. These act
as the System principal; every mutation still lands in the audit ledger.
"""

import json
import sys
from pathlib import Path
from typing import Optional

import click

from akira import __version__
from akira.config import AkiraConfig, ConfigurationError, get_config
from akira.core.audit import SYSTEM_ACTOR, ExportFormat, LogsExported
from akira.core.gateway import AccessGateway, create_gateway
from akira.core.policy import Role
from akira.core.vault import CredentialVault
from akira.errors import AkiraError
from akira.monitoring.logging import configure_logging


def format_json(data, pretty: bool = True) -> str:
    """Format data as JSON."""
    if pretty:
        return json.dumps(data, indent=2, default=str)
    return json.dumps(data, default=str)


def format_table(rows: list, headers: list) -> str:
    """Format data as ASCII table."""
    if not rows:
        return "No data"

    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(str(cell)))

    lines = []
    sep = "+" + "+".join("-" * (w + 2) for w in widths) + "+"
    lines.append(sep)
    lines.append("|" + "|".join(f" {h:<{widths[i]}} " for i, h in enumerate(headers)) + "|")
    lines.append(sep)
    for row in rows:
        lines.append("|" + "|".join(f" {str(c):<{widths[i]}} " for i, c in enumerate(row)) + "|")
    lines.append(sep)
    return "\n".join(lines)


def fail(message: str, hint: Optional[str] = None) -> None:
    click.echo(f"Error: {message}", err=True)
    if hint:
        click.echo(f"Fix: {hint}", err=True)
    sys.exit(1)


def open_gateway(ctx: click.Context) -> AccessGateway:
    """Build a gateway from the CLI options and environment."""
    gateway = ctx.obj.get("gateway")
    if gateway is not None:
        return gateway
    try:
        database_url = ctx.obj.get("database_url")
        config = AkiraConfig(database_url=database_url) if database_url else get_config()
        gateway = create_gateway(config)
    except ConfigurationError as e:
        fail(str(e), "Set the AKIRA_* environment variables (see README).")
    except AkiraError as e:
        fail(e.message)
    ctx.obj["gateway"] = gateway
    ctx.call_on_close(gateway.close)
    return gateway


# ==================== Main CLI Group ====================

@click.group()
@click.version_option(version=__version__, prog_name="akira")
@click.option("--database-url", envvar="AKIRA_DATABASE_URL", default=None,
              help="Store URL (sqlite:///path or memory://)")
@click.option("--log-level", envvar="AKIRA_LOG_LEVEL", default="WARNING", help="Log level")
@click.pass_context
def cli(ctx, database_url, log_level):
    """AKIRA CLI - operate the access gateway's store and audit ledger."""
    ctx.ensure_object(dict)
    ctx.obj["database_url"] = database_url
    configure_logging(level=log_level, json_format=False, stream=sys.stderr)


@cli.command("init")
@click.pass_context
def init_store(ctx):
    """Create or migrate the store schema."""
    gateway = open_gateway(ctx)
    health = gateway.health_check()
    if not health["healthy"]:
        fail(f"Store is not healthy: {health['storage']}")
    click.echo("Store initialized.")


@cli.command("create-admin")
@click.option("--email", prompt=True, help="Administrator email")
@click.option("--display-name", prompt=True, help="Display name")
@click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True, help="Password")
@click.pass_context
def create_admin(ctx, email, display_name, password):
    """Create an identity with the Admin role."""
    gateway = open_gateway(ctx)
    try:
        identity = gateway.auth.provision(email, password, display_name, Role.ADMIN)
    except AkiraError as e:
        fail(e.message)
    click.echo(f"Created admin {identity.email} ({identity.id})")


# ==================== Audit ====================

@cli.group()
def audit():
    """Audit ledger commands."""
    pass


@audit.command("verify")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def audit_verify(ctx, as_json):
    """Recompute every entry signature and report corrupted entries."""
    gateway = open_gateway(ctx)
    try:
        result = gateway.ledger.verify_all()
    except AkiraError as e:
        fail(e.message)

    if as_json:
        click.echo(format_json(result.to_dict()))
    elif result.is_intact:
        click.echo(f"Audit ledger intact: {result.total} entries verified.")
    else:
        click.echo(f"Audit ledger CORRUPTED: {len(result.corrupted)} of {result.total} entries failed.")
        click.echo(format_table([[entry_id] for entry_id in result.corrupted], ["Entry ID"]))

    if not result.is_intact:
        sys.exit(2)


@audit.command("export")
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Output file")
@click.option("--format", "fmt", type=click.Choice([f.value for f in ExportFormat]), default="json")
@click.option("--limit", type=int, default=None, help="Export only the oldest N entries")
@click.pass_context
def audit_export(ctx, output, fmt, limit):
    """Write a signed export of the audit ledger."""
    gateway = open_gateway(ctx)
    try:
        entries = gateway.ledger.query(newest_first=False, limit=limit)
        bundle = gateway.ledger.export(entries, exported_by=SYSTEM_ACTOR)
        gateway.ledger.append(LogsExported(export_id=bundle.export_id, entry_count=len(entries)))
    except AkiraError as e:
        fail(e.message)

    rendered = bundle.render(ExportFormat(fmt))
    if output:
        Path(output).write_text(rendered, encoding="utf-8")
        click.echo(f"Exported {len(entries)} entries to {output}")
    else:
        click.echo(rendered)


# ==================== Keys ====================

@cli.group()
def keys():
    """API key commands."""
    pass


@keys.command("reencrypt")
@click.option("--new-master-key", prompt=True, hide_input=True, help="New 32-byte master key, hex encoded")
@click.pass_context
def keys_reencrypt(ctx, new_master_key):
    """Re-encrypt every stored API key secret under a new master key."""
    try:
        raw = bytes.fromhex(new_master_key)
        new_vault = CredentialVault(raw)
    except ValueError:
        fail("New master key must be 64 hex characters (32 bytes)",
             "python -c \"import secrets; print(secrets.token_hex(32))\"")

    gateway = open_gateway(ctx)
    try:
        count = gateway.keys.reencrypt_all(new_vault)
    except AkiraError as e:
        fail(e.message)

    click.echo(f"Re-encrypted {count} API keys.")
    click.echo("Set AKIRA_MASTER_KEY to the new key before restarting the gateway.")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
