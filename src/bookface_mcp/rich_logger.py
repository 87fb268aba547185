"""Logging setup and Rich panels for tool calls.

Everything goes to stderr: under the stdio transport, stdout carries the MCP protocol.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.text import Text

from .config import Settings

_console = Console(stderr=True)

_MAX_RESULT_CHARS = 1200


def get_console() -> Console:
    return _console


def configure_logging(settings: Settings) -> None:
    """Install a single stderr handler on the root logger."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    handler: logging.Handler
    if settings.log_rich_enabled:
        handler = RichHandler(console=_console, show_path=False, rich_tracebacks=True, markup=False)
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)
    # httpx logs every request URL at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


@dataclass
class ToolCallContext:
    tool_name: str
    kwargs: dict[str, Any]
    start_time: float = field(default_factory=time.perf_counter)
    end_time: Optional[float] = None
    result: Any = None
    error: Optional[BaseException] = None
    success: bool = False

    @property
    def duration_ms(self) -> float:
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return (end - self.start_time) * 1000


def _preview(value: Any) -> str:
    try:
        text = json.dumps(value, indent=2, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        text = repr(value)
    if len(text) > _MAX_RESULT_CHARS:
        return text[:_MAX_RESULT_CHARS] + "\n... (truncated)"
    return text


def render_tool_call_panel(ctx: ToolCallContext) -> Panel:
    body = Text()
    for name, value in ctx.kwargs.items():
        body.append(f"{name}", style="bold")
        body.append(f" = {value!r}\n")
    if ctx.end_time is not None:
        body.append(f"\n{ctx.duration_ms:.0f} ms\n", style="dim")
        if ctx.success:
            body.append(_preview(ctx.result))
        elif ctx.error is not None:
            body.append(f"{type(ctx.error).__name__}: {ctx.error}", style="red")
    border = "cyan" if ctx.end_time is None else ("green" if ctx.success else "red")
    return Panel.fit(body, title=f"tool: {ctx.tool_name}", border_style=border)


def log_tool_call_start(ctx: ToolCallContext) -> None:
    _console.print(render_tool_call_panel(ctx))


def log_tool_call_end(ctx: ToolCallContext) -> None:
    _console.print(render_tool_call_panel(ctx))
