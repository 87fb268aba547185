"""Run MCP tools directly from the CLI without starting a server.

This module provides a bridge between the CLI and MCP tools, allowing tools
like get_chat_history or send_and_wait to be invoked from a shell, e.g.
``bookface-mcp tools call get_thread --args '{"thread_id": 123}'``.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from typing import Any

from .rich_logger import get_console

console = get_console()

# Cache for the MCP server instance
_mcp_server: Any = None


def _get_mcp_server() -> Any:
    """Get or create the MCP server instance."""
    global _mcp_server
    if _mcp_server is None:
        from .app import build_mcp_server
        _mcp_server = build_mcp_server()
    return _mcp_server


class MinimalContext:
    """Minimal context for CLI tool invocation."""

    async def info(self, message: str) -> None:
        console.print(f"[dim]{message}[/dim]")

    async def debug(self, message: str) -> None:
        pass

    async def warning(self, message: str) -> None:
        console.print(f"[yellow]{message}[/yellow]")

    async def error(self, message: str) -> None:
        console.print(f"[red]{message}[/red]")


async def run_tool_async(tool_name: str, arguments: dict[str, Any], mcp: Any = None) -> Any:
    """Run an MCP tool asynchronously.

    Args:
        tool_name: Name of the MCP tool to invoke
        arguments: Dictionary of arguments to pass to the tool
        mcp: Server to look the tool up on; defaults to a cached ``build_mcp_server()``

    Returns:
        The tool's return value

    Raises:
        ValueError: If tool not found
        ToolExecutionError: Any failure raised by the tool
    """
    server = mcp if mcp is not None else _get_mcp_server()

    # Get all registered tools
    tools = server._tool_manager._tools if hasattr(server, "_tool_manager") else {}

    if tool_name not in tools:
        available = list(tools.keys())
        raise ValueError(
            f"Tool '{tool_name}' not found. Available tools: {', '.join(sorted(available))}"
        )

    fn = tools[tool_name].fn

    # Inject ctx as first argument if the function expects it
    params = list(inspect.signature(fn).parameters.keys())
    if params and params[0] == "ctx":
        return await fn(MinimalContext(), **arguments)
    return await fn(**arguments)


def run_mcp_tool(tool_name: str, arguments: dict[str, Any]) -> Any:
    """Run an MCP tool synchronously.

    This is the main entry point for CLI commands to invoke MCP tools.
    """
    return asyncio.run(run_tool_async(tool_name, arguments))


def run_mcp_tool_json(tool_name: str, json_args: str) -> Any:
    """Run an MCP tool with JSON-encoded arguments."""
    try:
        arguments = json.loads(json_args) if json_args else {}
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON arguments: {e}") from e

    if not isinstance(arguments, dict):
        raise ValueError("Arguments must be a JSON object (dict)")

    return run_mcp_tool(tool_name, arguments)
