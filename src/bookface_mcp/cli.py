"""Typer CLI: run the server, manage stored credentials, call tools directly."""

from __future__ import annotations

import asyncio
import json

import httpx
import typer
from rich.table import Table

from .config import get_settings
from .credentials import SESSION_COOKIE, SSO_COOKIE, CredentialPair, strip_cookie_prefix
from .errors import BookfaceError
from .rich_logger import configure_logging, get_console
from .session import get_session

console = get_console()

app = typer.Typer(name="bookface-mcp", help="YC Bookface MCP bridge.", no_args_is_help=True)
auth_app = typer.Typer(help="Manage the Bookface session cookies stored in the macOS Keychain.")
tools_app = typer.Typer(help="Inspect and invoke MCP tools without a server.")
app.add_typer(auth_app, name="auth")
app.add_typer(tools_app, name="tools")


@app.callback()
def _main() -> None:
    configure_logging(get_settings())


@app.command()
def serve(
    transport: str = typer.Option("stdio", help="MCP transport: stdio or http."),
) -> None:
    """Run the MCP server."""
    from .app import build_mcp_server

    mcp = build_mcp_server()
    if transport == "stdio":
        mcp.run()
    elif transport == "http":
        http = get_settings().http
        mcp.run(transport="http", host=http.host, port=http.port, path=http.path)
    else:
        console.print(f"[red]Unknown transport {transport!r}; use stdio or http.[/red]")
        raise typer.Exit(code=2)


@auth_app.command("save")
def auth_save(
    sso_key: str = typer.Option(..., "--sso-key", help="Value of the _sso.key cookie."),
    session_key: str = typer.Option(..., "--session-key", help="Value of the _bf_session_key cookie."),
    verify: bool = typer.Option(True, "--verify/--no-verify", help="Probe Bookface with the new cookies."),
) -> None:
    """Store both cookies in the Keychain (open messages.ycombinator.com DevTools > Cookies)."""
    pair = CredentialPair(
        sso_key=strip_cookie_prefix(sso_key, SSO_COOKIE),
        session_key=strip_cookie_prefix(session_key, SESSION_COOKIE),
    )
    if not pair.sso_key or not pair.session_key:
        console.print("[red]Both _sso.key and _bf_session_key are required.[/red]")
        raise typer.Exit(code=1)

    session = get_session()
    try:
        session.credentials.persist(pair)
    except BookfaceError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc

    if not verify:
        console.print("Credentials stored in macOS Keychain.")
        return

    console.print("Verifying...")
    try:
        status = asyncio.run(session.verify_credentials(pair))
    except httpx.HTTPError as exc:
        console.print(f"[yellow]Could not verify: {exc}. Credentials saved anyway.[/yellow]")
        return
    if status == 200:
        console.print("[green]Credentials valid. Stored in macOS Keychain.[/green]")
    elif status == 401:
        console.print("[yellow]WARNING: Got 401. Double-check both cookie values.[/yellow]")
        console.print("Credentials saved anyway; re-run `auth save` to replace.")
    else:
        console.print(f"[yellow]WARNING: Got {status}. Credentials saved anyway.[/yellow]")


@auth_app.command("delete")
def auth_delete() -> None:
    """Remove the stored cookies from the Keychain."""
    try:
        get_session().credentials.erase()
    except BookfaceError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    console.print("Deleted stored credentials from Keychain.")


@auth_app.command("status")
def auth_status() -> None:
    """Show which sources supply each cookie. Values are never printed."""
    sources = get_session().credentials.describe_sources()
    table = Table(title="Credential sources")
    table.add_column("Cookie")
    table.add_column("Sources")
    for name, cookie in (("sso_key", SSO_COOKIE), ("session_key", SESSION_COOKIE)):
        found = sources.get(name) or []
        table.add_row(cookie, ", ".join(found) if found else "[red]missing[/red]")
    console.print(table)


@tools_app.command("list")
def tools_list() -> None:
    """List the registered tool names."""
    from .tool_runner import _get_mcp_server

    for name in sorted(_get_mcp_server()._tool_manager._tools):
        console.print(name)


@tools_app.command("call")
def tools_call(
    name: str = typer.Argument(..., help="Tool name, e.g. get_chat_history."),
    args: str = typer.Option("", "--args", help="JSON object of tool arguments."),
) -> None:
    """Invoke one tool in-process and print its JSON result to stdout."""
    from .app import ToolExecutionError
    from .session import init_session
    from .tool_runner import run_mcp_tool_json

    init_session(get_settings())
    try:
        result = run_mcp_tool_json(name, args)
    except ToolExecutionError as exc:
        console.print_json(data=exc.to_payload())
        raise typer.Exit(code=1) from exc
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=2) from exc
    typer.echo(json.dumps(result, indent=2, default=str))
