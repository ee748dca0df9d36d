"""
idbridge CLI

Commands for provisioning and inspecting ledger identities:
- enroll: Register and enroll a principal
- status: Show whether a principal is enrolled
- validate: Check a stored certificate's validity window
- revoke: Revoke a principal's identity
- export: Print the public certificate
- info: Show certificate details
- list: List enrolled principals
- health: Check storage, membership authority and IdP reachability
"""

import asyncio
import json
import sys
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import click
from rich import box
from rich.console import Console
from rich.table import Table

from idbridge.bridge import IdentityBridge
from idbridge.config import BridgeConfig, configure_logging, load_config
from idbridge.exceptions import IdentityBridgeError
from idbridge.models import Attribute
from idbridge.orchestrator import DEFAULT_REVOCATION_REASON

console = Console()


def _format_datetime(dt: Optional[datetime]) -> str:
    """Format a datetime for display, handling None."""
    if dt is None:
        return "N/A"
    return dt.strftime("%Y-%m-%d %H:%M:%S")


def _output_json(data: object) -> None:
    """Print data as JSON to stdout."""
    click.echo(json.dumps(data, indent=2, default=str))


def _parse_attrs(values: tuple[str, ...]) -> list[Attribute]:
    """Parse ``name=value`` or ``name=value:ecert`` options."""
    attrs = []
    for item in values:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"expected name=value, got {item!r}", param_hint="--attr")
        ecert = value.endswith(":ecert")
        if ecert:
            value = value[: -len(":ecert")]
        attrs.append(Attribute(name=name, value=value, ecert=ecert))
    return attrs


def _run(ctx: click.Context, operation: Callable[[IdentityBridge], Awaitable[Any]]) -> Any:
    """Run ``operation`` against a started bridge, exiting 1 on bridge errors."""
    config: BridgeConfig = ctx.obj["config"]

    async def main() -> Any:
        async with IdentityBridge.from_config(config) as bridge:
            return await operation(bridge)

    try:
        return asyncio.run(main())
    except IdentityBridgeError as exc:
        if ctx.obj.get("json"):
            click.echo(json.dumps(exc.to_dict(), default=str), err=True)
        else:
            click.echo(f"Error [{exc.kind}]: {exc}", err=True)
        sys.exit(1)


@click.group()
@click.option(
    "--config", "config_path",
    type=click.Path(dir_okay=False),
    envvar="IDBRIDGE_CONFIG",
    default=None,
    help="YAML configuration file.",
)
@click.option("--json", "json_flag", is_flag=True, help="Output as JSON.")
@click.option("--log-level", default=None, help="Override the configured log level.")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], json_flag: bool, log_level: Optional[str]):
    """Provision and manage ledger identities for authenticated principals."""
    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
        configure_logging(log_level or config.log_level)
    except IdentityBridgeError as exc:
        click.echo(f"Error [{exc.kind}]: {exc}", err=True)
        sys.exit(1)
    ctx.obj["config"] = config
    ctx.obj["json"] = json_flag


@cli.command()
@click.argument("principal_id")
@click.option("--role", default="client", show_default=True, help="Registration type and role attribute.")
@click.option("--affiliation", default="", help="Affiliation, e.g. org1.department1.")
@click.option("--attr", "attrs", multiple=True, help="Attribute as name=value[:ecert]. Repeatable.")
@click.option("--timeout", type=float, default=None, help="Deadline in seconds for the whole enrollment.")
@click.pass_context
def enroll(
    ctx: click.Context,
    principal_id: str,
    role: str,
    affiliation: str,
    attrs: tuple[str, ...],
    timeout: Optional[float],
):
    """Register and enroll PRINCIPAL_ID with the membership authority."""
    parsed = _parse_attrs(attrs)
    record = _run(ctx, lambda b: b.enroll(principal_id, role, affiliation, parsed, timeout))

    if ctx.obj["json"]:
        _output_json({
            "principal_id": record.principal_id,
            "membership_id": record.membership_id,
            "role": record.role,
            "affiliation": record.affiliation,
            "issued_at": record.issued_at.isoformat(),
        })
        return

    console.print(f"\n[bold green]Enrolled {principal_id}[/bold green]\n")
    console.print(f"  Membership ID:  {record.membership_id}")
    console.print(f"  Role:           {record.role}")
    console.print(f"  Issued At:      {_format_datetime(record.issued_at)}")
    console.print()


@cli.command()
@click.argument("principal_id")
@click.pass_context
def status(ctx: click.Context, principal_id: str):
    """Show whether PRINCIPAL_ID is enrolled."""
    result = _run(ctx, lambda b: b.status(principal_id))

    if ctx.obj["json"]:
        _output_json(result.model_dump(mode="json"))
        return

    if result.enrolled:
        console.print(f"[green]{principal_id}[/green] enrolled in {result.membership_id}")
    else:
        console.print(f"[yellow]{principal_id}[/yellow] not enrolled")


@cli.command()
@click.argument("principal_id")
@click.pass_context
def validate(ctx: click.Context, principal_id: str):
    """Check the validity window of PRINCIPAL_ID's certificate.

    Exits with code 2 when the certificate is not currently valid.
    """
    report = _run(ctx, lambda b: b.validate(principal_id))

    if ctx.obj["json"]:
        _output_json(report.model_dump(mode="json"))
    elif report.valid:
        console.print(
            f"[green]Valid[/green] until {_format_datetime(report.not_after)}"
        )
    else:
        console.print(f"[red]Invalid[/red]: {report.reason}")
        if report.not_after is not None:
            console.print(f"  Not Before: {_format_datetime(report.not_before)}")
            console.print(f"  Not After:  {_format_datetime(report.not_after)}")

    if not report.valid:
        sys.exit(2)


@cli.command()
@click.argument("principal_id")
@click.option("--reason", "-r", default=DEFAULT_REVOCATION_REASON, help="Reason for revocation.")
@click.option("--force", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def revoke(ctx: click.Context, principal_id: str, reason: str, force: bool):
    """Revoke PRINCIPAL_ID's identity upstream and remove it locally."""
    if not force:
        click.echo(f"Revoking the ledger identity of '{principal_id}'.")
        if not click.confirm("Are you sure?", default=False):
            click.echo("Revocation cancelled.")
            return

    record = _run(ctx, lambda b: b.revoke(principal_id, reason))

    if ctx.obj["json"]:
        _output_json(record.model_dump(mode="json"))
        return

    console.print(f"\n[bold red]Identity Revoked: {principal_id}[/bold red]\n")
    console.print(f"  Reason:         {record.reason}")
    console.print(f"  Revoked At:     {_format_datetime(record.revoked_at)}")
    if not record.upstream_revoked:
        console.print(
            f"  [yellow]Upstream revocation failed: {record.upstream_error}[/yellow]"
        )
    console.print()


@cli.command()
@click.argument("principal_id")
@click.pass_context
def export(ctx: click.Context, principal_id: str):
    """Print PRINCIPAL_ID's public certificate."""
    exported = _run(ctx, lambda b: b.export(principal_id))

    if ctx.obj["json"]:
        _output_json(exported.model_dump(mode="json"))
    else:
        click.echo(exported.certificate, nl=False)


@cli.command()
@click.argument("principal_id")
@click.pass_context
def info(ctx: click.Context, principal_id: str):
    """Show subject, issuer, serial and validity of PRINCIPAL_ID's certificate."""
    details = _run(ctx, lambda b: b.certificate_info(principal_id))

    if ctx.obj["json"]:
        _output_json(details.model_dump(mode="json"))
        return

    table = Table(title=f"Certificate: {principal_id}", box=box.ROUNDED, show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Subject", details.subject)
    table.add_row("Issuer", details.issuer)
    table.add_row("Serial", details.serial_number)
    table.add_row("Not Before", _format_datetime(details.not_before))
    table.add_row("Not After", _format_datetime(details.not_after))
    table.add_row("SHA-256", details.fingerprint)
    console.print(table)


@cli.command("list")
@click.pass_context
def list_identities(ctx: click.Context):
    """List enrolled principals."""

    async def collect(bridge: IdentityBridge) -> list[dict[str, Any]]:
        rows = []
        for principal_id in await bridge.list_identities():
            result = await bridge.status(principal_id)
            rows.append({"principal_id": principal_id, "membership_id": result.membership_id})
        return rows

    rows = _run(ctx, collect)

    if ctx.obj["json"]:
        _output_json(rows)
        return

    if not rows:
        console.print("[yellow]No identities enrolled.[/yellow]")
        return

    table = Table(title="Enrolled Identities", box=box.ROUNDED)
    table.add_column("Principal ID", style="cyan")
    table.add_column("Membership ID")
    for row in rows:
        table.add_row(row["principal_id"], row["membership_id"] or "")
    console.print(table)
    console.print(f"\n[dim]Total: {len(rows)} identities[/dim]")


@cli.command()
@click.pass_context
def health(ctx: click.Context):
    """Check storage, membership authority and IdP reachability."""
    report = _run(ctx, lambda b: b.health_check())

    if ctx.obj["json"]:
        _output_json(report)
    else:
        storage_ok = report["storage"]["healthy"]
        ca = report["ca"]
        console.print(
            f"Storage ({report['storage']['backend']}): "
            + ("[green]healthy[/green]" if storage_ok else "[red]unhealthy[/red]")
        )
        if ca["healthy"]:
            console.print(f"CA ({ca.get('ca_name', '')} {ca.get('version', '')}): [green]healthy[/green]")
        else:
            console.print(f"CA: [red]unhealthy[/red] {ca.get('error', '')}")
        idp = report.get("idp")
        if idp is not None:
            if idp["healthy"]:
                console.print("IdP admin token: [green]healthy[/green]")
            else:
                console.print(f"IdP admin token: [red]unhealthy[/red] {idp.get('error', '')}")

    if not report["healthy"]:
        sys.exit(1)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
