"""Tools that run sidecar tasks. Always headless: there is no human at the other end."""

import json
import logging

from mcp.server.fastmcp import FastMCP

from ..config import Config
from ..context import ContextOptions
from ..engine import build_mcp_config
from ..errors import FatalTaskError, SessionNotFoundError
from ..models import SessionMode, SummaryLength
from ..orchestrator import Orchestrator, TaskRequest, TaskResult

logger = logging.getLogger(__name__)


def _result_json(result: TaskResult) -> str:
	return json.dumps({
		"success": True,
		"task_id": result.task_id,
		"status": result.status.value,
		"timed_out": result.timed_out,
		"summary": result.summary,
		"conflicts": [c.model_dump(mode="json", by_alias=True) for c in result.conflicts],
		"context_drift": result.drift.model_dump(by_alias=True) if result.drift else None,
		"warnings": result.warnings(),
	})


def _error_json(error: Exception) -> str:
	message = error.describe() if isinstance(error, FatalTaskError) else str(error)
	return json.dumps({"success": False, "error": message})


def register_task_tools(mcp: FastMCP, config: Config) -> None:
	"""Register start/resume/continue tools."""

	@mcp.tool()
	async def sidecar_start(
		model: str,
		briefing: str,
		project_path: str,
		session_id: str = "",
		context_turns: int = 0,
		context_since: str = "",
		context_max_tokens: int = 0,
		timeout_minutes: float = 0,
		agent: str = "",
		summary_length: str = "normal",
		mcp_servers: list[str] | None = None,
		mcp_config_path: str = "",
	) -> str:
		"""
		Delegate a task to another model and wait for its summary.

		The sidecar receives recent context from this Claude Code session,
		works autonomously and returns a folded summary.

		Args:
			model: Model string, e.g. "openrouter/google/gemini-2.5-pro"
			briefing: What the sidecar should do
			project_path: Project directory
			session_id: Parent Claude Code session id (default: most recent)
			context_turns: Number of recent user turns to include (default from config)
			context_since: Time window instead of turns, e.g. "30m", "2h"
			context_max_tokens: Approximate token budget for the context
			timeout_minutes: Give up and force a summary after this long
			agent: Engine agent name
			summary_length: "brief", "normal" or "verbose"
			mcp_servers: Extra MCP servers for the sidecar, each "name=url", "name=command" or a JSON object
			mcp_config_path: opencode.json style file with MCP servers for the sidecar
		"""
		try:
			length = SummaryLength(summary_length)
		except ValueError:
			return json.dumps({"success": False, "error": f"Invalid summary_length: {summary_length}"})
		try:
			servers = build_mcp_config(mcp_servers, mcp_config_path or None)
		except ValueError as e:
			return json.dumps({"success": False, "error": str(e)})

		request = TaskRequest(
			model=model,
			briefing=briefing,
			project=project_path,
			mode=SessionMode.HEADLESS,
			agent=agent or None,
			summary_length=length,
			context=ContextOptions(
				session_id=session_id or None,
				turns=context_turns or config.context_turns,
				since=context_since or None,
				max_tokens=context_max_tokens or config.context_max_tokens,
			),
			timeout_minutes=timeout_minutes or None,
			mcp_config=servers,
		)
		try:
			result = await Orchestrator(config).start(request)
		except FatalTaskError as e:
			return _error_json(e)
		return _result_json(result)

	@mcp.tool()
	async def sidecar_resume(task_id: str, project_path: str, timeout_minutes: float = 0) -> str:
		"""
		Reopen a previous sidecar task under the same id.

		Args:
			task_id: Task to resume (from sidecar_list)
			project_path: Project directory
			timeout_minutes: Give up and force a summary after this long
		"""
		try:
			result = await Orchestrator(config).resume(
				task_id,
				project_path,
				mode=SessionMode.HEADLESS,
				timeout_minutes=timeout_minutes or None,
			)
		except (FatalTaskError, SessionNotFoundError) as e:
			return _error_json(e)
		return _result_json(result)

	@mcp.tool()
	async def sidecar_continue(
		task_id: str,
		briefing: str,
		project_path: str,
		model: str = "",
		timeout_minutes: float = 0,
	) -> str:
		"""
		Start a new sidecar task that builds on a previous one.

		Args:
			task_id: Task to continue from
			briefing: The new task
			project_path: Project directory
			model: Model string (default: the previous task's model)
			timeout_minutes: Give up and force a summary after this long
		"""
		try:
			result = await Orchestrator(config).continue_(
				task_id,
				briefing,
				project_path,
				model=model or None,
				mode=SessionMode.HEADLESS,
				timeout_minutes=timeout_minutes or None,
			)
		except (FatalTaskError, SessionNotFoundError) as e:
			return _error_json(e)
		return _result_json(result)
