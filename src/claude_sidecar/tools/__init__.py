"""MCP tool registration."""

from mcp.server.fastmcp import FastMCP

from ..config import Config
from .sessions import register_session_tools
from .tasks import register_task_tools


def register_all_tools(mcp: FastMCP, config: Config) -> None:
	"""Register all MCP tools."""
	register_task_tools(mcp, config)
	register_session_tools(mcp, config)
