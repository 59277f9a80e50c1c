"""
Staking signing pipeline canonical entrypoint.

This is the single source of truth for:
- MCP server name
- tool registration order
"""

from __future__ import annotations

from typing import Optional

from fastmcp import FastMCP

from app.core.container import Container
from app.core.settings import Settings
from app.tools.staking import register_staking_tools


def build_server(settings: Optional[Settings] = None) -> FastMCP:
    container = Container(settings)
    mcp = FastMCP(container.settings.PROJECT_NAME)
    register_staking_tools(mcp, container)
    return mcp


def main() -> None:
    build_server().run()


if __name__ == "__main__":
    main()
