"""Entry point for the stepflow MCP server.

Tools must be imported before the server starts so that their @mcp.tool()
decorators register on the FastMCP instance.
"""


def main() -> None:
    from . import tools  # noqa: F401 - imported for decorator registration
    from .server import main as server_main

    server_main()


if __name__ == "__main__":
    main()
