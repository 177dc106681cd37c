"""Read-only tools over stored sidecar sessions."""

import json

from mcp.server.fastmcp import FastMCP

from ..config import Config
from ..errors import SessionNotFoundError
from ..store import SessionStore, render_dialogue


def register_session_tools(mcp: FastMCP, config: Config) -> None:
	"""Register session listing/reading tools."""

	@mcp.tool()
	async def sidecar_list(project_path: str, status: str = "all") -> str:
		"""
		List sidecar sessions for a project, newest first.

		Args:
			project_path: Project directory
			status: "all", "running", "complete" or "failed"
		"""
		sessions = SessionStore(project_path).list_sessions(status)
		return json.dumps({
			"success": True,
			"count": len(sessions),
			"sessions": [
				{
					"task_id": s.task_id,
					"status": s.status.value,
					"mode": s.mode.value,
					"model": s.model,
					"briefing": s.briefing,
					"created_at": s.model_dump(mode="json", by_alias=True)["createdAt"],
					"continues_from": s.continues_from,
				}
				for s in sessions
			],
		})

	@mcp.tool()
	async def sidecar_read(task_id: str, project_path: str, conversation: bool = False) -> str:
		"""
		Read a sidecar session's summary, or its full conversation.

		Args:
			task_id: Task to read
			project_path: Project directory
			conversation: Return the conversation log instead of the summary
		"""
		store = SessionStore(project_path)
		try:
			session = store.read_metadata(task_id)
			if conversation:
				content = render_dialogue(store.read_conversation(task_id))
			else:
				content = store.read_summary(task_id) or ""
		except SessionNotFoundError as e:
			return json.dumps({"success": False, "error": str(e)})

		return json.dumps({
			"success": True,
			"task_id": task_id,
			"status": session.status.value,
			"content": content,
			"metadata": session.model_dump(mode="json", by_alias=True),
		})
