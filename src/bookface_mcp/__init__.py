"""Top-level package for the YC Bookface MCP bridge."""

from __future__ import annotations

import asyncio
import importlib
import inspect
from typing import Any, cast

# Python 3.14 deprecates asyncio.iscoroutinefunction, which FastMCP still calls.
asyncio.iscoroutinefunction = cast(Any, inspect.iscoroutinefunction)

# Public name -> submodule; resolved on first access so `bookface-mcp auth ...` skips FastMCP.
_LAZY_EXPORTS: dict[str, str] = {
    "build_mcp_server": ".app",
    "BookfaceSession": ".session",
    "get_session": ".session",
    "get_settings": ".config",
}


def __getattr__(name: str) -> Any:
    module_name = _LAZY_EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module = importlib.import_module(module_name, __name__)
    return getattr(module, name)


__all__ = sorted(_LAZY_EXPORTS)
