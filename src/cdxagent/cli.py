"""cdx-agent CLI - sign requests, call agents, run the server."""

import asyncio
import json
import sys
import time
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import Any, ParamSpec, TypeVar

import click
from rich.console import Console
from rich.table import Table

from cdxagent.client import AgentClient, AgentClientError, sign_request
from cdxagent.common.audit import HashChainedAuditLog
from cdxagent.common.settings import Settings

console = Console()

P = ParamSpec("P")
R = TypeVar("R")


def async_command(f: Callable[P, Coroutine[Any, Any, R]]) -> Callable[P, R]:
    """Decorator to run async commands."""

    def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        return asyncio.run(f(*args, **kwargs))

    return wrapper


def _require_secret(ctx: click.Context) -> str:
    secret = ctx.obj.get("secret")
    if not secret:
        console.print("[red]No shared secret given (--secret or CDX_AGENT_SECRET)[/red]")
        sys.exit(1)
    return secret


@click.group()
@click.option(
    "--agent-url",
    default="http://localhost:8090",
    show_default=True,
    help="Agent base URL",
)
@click.option(
    "--secret",
    envvar="CDX_AGENT_SECRET",
    default=None,
    help="Shared secret (defaults to $CDX_AGENT_SECRET)",
)
@click.option(
    "--prefix",
    default="cdx-agent",
    show_default=True,
    help="Route prefix configured on the agent",
)
@click.pass_context
def cli(ctx: click.Context, agent_url: str, secret: str | None, prefix: str) -> None:
    """cdx-agent CLI - Remote administration over HMAC-signed requests."""
    ctx.ensure_object(dict)
    ctx.obj["agent_url"] = agent_url.rstrip("/")
    ctx.obj["secret"] = secret
    prefix = prefix.strip("/")
    ctx.obj["prefix"] = f"/{prefix}" if prefix else ""


@cli.command("sign")
@click.option("--method", "-m", default="GET", show_default=True, help="HTTP method")
@click.option("--path", "-p", required=True, help="Request path, e.g. /cdx-agent/health")
@click.option("--body", "-b", default="", help="Raw request body")
@click.option("--timestamp", "-t", type=int, default=None, help="Override timestamp")
@click.pass_context
def sign_cmd(
    ctx: click.Context,
    method: str,
    path: str,
    body: str,
    timestamp: int | None,
) -> None:
    """Print the authentication headers for a request."""
    secret = _require_secret(ctx)
    headers = sign_request(secret, method, path, body.encode("utf-8"), timestamp=timestamp)
    for name, value in headers.items():
        click.echo(f"{name}: {value}")


@cli.command("call")
@click.argument("endpoint")
@click.option("--method", "-m", default="GET", show_default=True, help="HTTP method")
@click.option("--data", "-d", default=None, help="JSON body")
@click.option("--param", "-q", multiple=True, help="Query parameter key=value")
@click.option("--timeout", default=30.0, show_default=True, help="Request timeout (seconds)")
@click.pass_context
@async_command
async def call_cmd(
    ctx: click.Context,
    endpoint: str,
    method: str,
    data: str | None,
    param: tuple[str, ...],
    timeout: float,
) -> None:
    """Call an agent endpoint, e.g. `cdx-agent call health`."""
    secret = _require_secret(ctx)
    path = f"{ctx.obj['prefix']}/{endpoint.lstrip('/')}"

    payload: dict[str, Any] | None = None
    if data:
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as exc:
            console.print(f"[red]Invalid JSON body: {exc}[/red]")
            sys.exit(1)

    params: dict[str, str] = {}
    for item in param:
        key, _, value = item.partition("=")
        params[key] = value

    async with AgentClient(ctx.obj["agent_url"], secret, timeout=timeout) as client:
        try:
            status, response = await client.request(method, path, payload, params or None)
        except AgentClientError as exc:
            console.print(f"[red]Error: {exc}[/red]")
            sys.exit(1)

    style = "green" if status < 400 else "red"
    console.print(f"[{style}]HTTP {status}[/{style}]")
    if isinstance(response, (dict, list)):
        console.print_json(json.dumps(response))
    else:
        console.print(response)

    if status >= 400:
        sys.exit(1)


@cli.command("serve")
@click.option("--host", default=None, help="Bind host (defaults to settings)")
@click.option("--port", type=int, default=None, help="Bind port (defaults to settings)")
def serve_cmd(host: str | None, port: int | None) -> None:
    """Run the agent HTTP server."""
    import uvicorn

    from cdxagent.agent.main import create_app
    from cdxagent.common.logging import setup_logging

    settings = Settings()
    setup_logging(settings.log_level, json_output=settings.log_json, log_file=settings.log_file)
    uvicorn.run(
        create_app(settings),
        host=host or settings.agent_host,
        port=port or settings.agent_port,
        log_level=settings.log_level.lower(),
    )


@cli.command("verify-audit")
@click.option("--log-path", default="audit_logs/auth.jsonl", help="Path to audit log")
def verify_audit(log_path: str) -> None:
    """Verify audit log integrity."""
    audit = HashChainedAuditLog(log_path)
    is_valid, broken = audit.verify_chain()

    if is_valid:
        console.print("[green]✓ Audit log integrity verified[/green]")
    else:
        console.print(f"[red]✗ Audit log corrupted at lines: {broken}[/red]")
        sys.exit(1)


@cli.command("show-audit")
@click.option("--log-path", default="audit_logs/auth.jsonl", help="Path to audit log")
@click.option("--last", "-n", default=20, help="Number of entries to show")
@click.option("--filter-reason", help="Filter by deny reason")
def show_audit(log_path: str, last: int, filter_reason: str | None) -> None:
    """Show recent rejected requests."""

    log_file = Path(log_path)
    if not log_file.exists():
        console.print(f"[yellow]Audit log not found: {log_path}[/yellow]")
        return

    entries = []
    with open(log_file, encoding="utf-8") as f:
        for line in f:
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if filter_reason and entry.get("reason") != filter_reason:
                continue
            entries.append(entry)

    entries = entries[-last:]

    table = Table(title=f"Rejected requests (last {len(entries)} entries)")
    table.add_column("Time", style="cyan")
    table.add_column("Reason", style="red")
    table.add_column("Method")
    table.add_column("Path", style="green")
    table.add_column("Remote")

    for entry in entries:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(entry.get("ts", 0)))
        table.add_row(
            ts,
            entry.get("reason", "-"),
            entry.get("method", "-"),
            entry.get("path", "-"),
            entry.get("remote_address") or "-",
        )

    console.print(table)


def main() -> None:
    """CLI entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
