"""claude-sidecar MCP server."""

from mcp.server.fastmcp import FastMCP

from .config import load_config
from .logging_config import setup_logging
from .tools import register_all_tools

mcp = FastMCP("claude-sidecar")
config = load_config()
setup_logging(log_dir=config.log_dir)
register_all_tools(mcp, config)
