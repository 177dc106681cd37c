"""
Parent transcript parsing.

Reads the JSONL conversation logs Claude Code keeps under
~/.claude/projects/<encoded project path>/<session id>.jsonl and renders
them as readable context text. Malformed lines and records are skipped.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from .models import parse_timestamp

logger = logging.getLogger(__name__)


def parse_jsonl_line(line: str) -> Optional[dict]:
	"""Parse one JSONL line. Returns None for blank or invalid lines."""
	if not line or not line.strip():
		return None
	try:
		value = json.loads(line)
	except json.JSONDecodeError:
		return None
	return value if isinstance(value, dict) else None


def read_jsonl(path: Path) -> list[dict]:
	"""
	Read and parse a JSONL file.

	Raises:
		OSError: If the file cannot be read
	"""
	text = Path(path).read_text(encoding="utf-8", errors="replace")
	records = []
	for line in text.splitlines():
		record = parse_jsonl_line(line)
		if record is not None:
			records.append(record)
	return records


def record_time(record: dict) -> Optional[datetime]:
	return parse_timestamp(record.get("timestamp"))


def is_user_record(record: dict) -> bool:
	return record.get("type") == "user"


def _tool_label(name: str, tool_input: Any) -> str:
	path = ""
	if isinstance(tool_input, dict):
		path = tool_input.get("path") or tool_input.get("file_path") or ""
	return f"[Tool: {name} {path}]" if path else f"[Tool: {name}]"


def extract_content(record: dict) -> str:
	"""Extract text from string content or a list of content blocks."""
	message = record.get("message")
	if not isinstance(message, dict):
		return ""

	content = message.get("content")
	if isinstance(content, str):
		return content
	if not isinstance(content, list):
		return ""

	pieces = []
	for block in content:
		if not isinstance(block, dict):
			continue
		if block.get("type") == "tool_use":
			pieces.append(_tool_label(block.get("name") or "Unknown", block.get("input")))
		elif isinstance(block.get("text"), str):
			pieces.append(block["text"])
	return "".join(pieces)


def format_time(ts: datetime) -> str:
	"""Local wall clock time, e.g. '10:30 AM'."""
	return ts.astimezone().strftime("%I:%M %p")


def format_record(record: dict) -> str:
	"""
	Format a single transcript record.

	Examples:
		[User @ 10:30 AM] Can you look at auth?
		[Assistant @ 10:31 AM] Sure.
		[Tool: Read src/auth.py]
	"""
	kind = record.get("type")
	ts = record_time(record)
	time = format_time(ts) if ts else ""

	if kind == "user":
		return f"[User @ {time}] {extract_content(record)}"
	if kind == "assistant":
		return f"[Assistant @ {time}] {extract_content(record)}"
	if kind == "tool_use":
		return _tool_label(record.get("tool") or "Unknown", record.get("input"))
	return ""


def format_context(records: list[dict]) -> str:
	"""Format records into a context string separated by blank lines."""
	formatted = []
	for record in records:
		try:
			text = format_record(record)
		except (TypeError, ValueError, AttributeError) as e:
			logger.debug(f"Skipping unformattable record: {e}")
			continue
		if text:
			formatted.append(text)
	return "\n\n".join(formatted)
