"""Shared test fixtures and helpers for claude-sidecar tests."""

import json
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

from claude_sidecar.config import Config
from claude_sidecar.context import history_dir
from claude_sidecar.models import isoformat, utc_now

FAKE_ENGINE = Path(__file__).parent / "fake_engine.py"


def make_config(tmp_path: Path, **overrides) -> Config:
	"""Config pointing at tmp_path and the fake engine, with fast timings."""
	values = dict(
		config_dir=tmp_path / "config",
		data_dir=tmp_path / "data",
		claude_home=tmp_path / "claude_home",
		engine_command=[sys.executable, str(FAKE_ENGINE)],
		base_port=45200,
		health_interval=0.1,
		health_retries=100,
		http_timeout=5.0,
		initial_message_attempts=3,
		initial_backoff=0.01,
		poll_interval=0.1,
		grace_period=0.5,
		heartbeat_interval=0.1,
	)
	values.update(overrides)
	return Config(**values)


def make_records(turns: int, start: Optional[datetime] = None, step: timedelta = timedelta(minutes=1)) -> list[dict]:
	"""Alternating user/assistant transcript records, one pair per turn."""
	start = start or utc_now() - step * turns * 2
	records = []
	for i in range(turns):
		records.append({
			"type": "user",
			"timestamp": isoformat(start + step * (2 * i)),
			"message": {"role": "user", "content": f"question {i + 1}"},
		})
		records.append({
			"type": "assistant",
			"timestamp": isoformat(start + step * (2 * i + 1)),
			"message": {"role": "assistant", "content": [{"type": "text", "text": f"answer {i + 1}"}]},
		})
	return records


def write_parent_log(claude_home: Path, project: Path, session_id: str, records: list[dict]) -> Path:
	"""Write a Claude Code style JSONL log for a project."""
	directory = history_dir(project, claude_home)
	directory.mkdir(parents=True, exist_ok=True)
	path = directory / f"{session_id}.jsonl"
	path.write_text("\n".join(json.dumps(r) for r in records) + "\n")
	return path


def capture_tools(config: Config, register_fn: Callable) -> dict:
	"""Register tools on a mock MCP and return the captured tool functions.

	Args:
		config: Config object to pass to the registration function
		register_fn: The registration function (e.g., register_session_tools)

	Returns:
		Dict mapping tool name to the tool function
	"""
	captured = {}

	class MockMCP:
		def tool(self):
			def decorator(fn):
				captured[fn.__name__] = fn
				return fn
			return decorator

	register_fn(MockMCP(), config)
	return captured


class ScriptedSurface:
	"""Interactive surface that sends fixed messages, then folds."""

	def __init__(self, messages: list[str]):
		self.messages = messages
		self.replies: list[str] = []

	async def run(self, task) -> None:
		for message in self.messages:
			self.replies.append(await task.send_user_message(message))
		task.request_fold()
