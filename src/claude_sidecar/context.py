"""
Context Resolver - Builds the parent-conversation context for a sidecar.

Resolution is two-tier: an explicit session id when it exists on disk,
otherwise the most recently modified log. Filtering applies either a time
window or a trailing turn count (never both), then the rendered text is
truncated from the start to fit an approximate token budget.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from .models import utc_now
from .transcript import format_context, is_user_record, read_jsonl, record_time

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
TRUNCATION_MARKER = "[Earlier context truncated...]"
NO_HISTORY_TEXT = "[No Claude Code conversation history found]"

_DURATION_RE = re.compile(r"^(\d+)([mhd])$")
_DURATION_UNITS = {"m": "minutes", "h": "hours", "d": "days"}


@dataclass
class ContextOptions:
	"""How much of the parent conversation to hand off."""
	session_id: Optional[str] = None
	turns: int = 50
	since: Optional[str] = None
	max_tokens: int = 80000


@dataclass
class SessionResolution:
	"""Result of locating a parent conversation log."""
	path: Optional[Path]
	method: str
	warning: Optional[str] = None


@dataclass
class ParentContext:
	"""
	Filtered, rendered view of the parent conversation.

	A ParentContext with no source is the "no history" value; it is valid
	and callers must not treat it as an error.
	"""
	text: str = ""
	source: Optional[Path] = None
	method: str = "none"
	warning: Optional[str] = None

	@classmethod
	def none(cls, warning: Optional[str] = None) -> "ParentContext":
		return cls(warning=warning)

	@property
	def is_empty(self) -> bool:
		return self.source is None

	def render(self) -> str:
		if self.is_empty:
			return NO_HISTORY_TEXT
		return self.text or "[No relevant context found]"


def encode_project_path(project: str | Path) -> str:
	"""Encode a project path the way Claude Code names its history directories."""
	return re.sub(r"[/\\_]", "-", str(project))


def history_dir(project: str | Path, claude_home: Path) -> Path:
	"""Directory holding the parent conversation logs for a project."""
	return Path(claude_home) / "projects" / encode_project_path(project)


def parse_duration(value: Optional[str]) -> Optional[timedelta]:
	"""Parse '30m', '2h' or '1d'. Returns None for anything else."""
	if not value or not isinstance(value, str):
		return None
	match = _DURATION_RE.match(value.strip())
	if not match:
		return None
	amount = int(match.group(1))
	if amount <= 0:
		return None
	return timedelta(**{_DURATION_UNITS[match.group(2)]: amount})


def estimate_tokens(text: str) -> int:
	if not text:
		return 0
	return len(text) // CHARS_PER_TOKEN


def _list_logs(directory: Path) -> list[tuple[Path, float]]:
	logs = []
	for path in directory.glob("*.jsonl"):
		try:
			logs.append((path, path.stat().st_mtime))
		except OSError:
			continue
	return sorted(logs, key=lambda item: item[1], reverse=True)


def find_most_recent_session(
	directory: Path,
	ambiguity_window: timedelta = timedelta(minutes=5),
	now: Optional[datetime] = None,
) -> SessionResolution:
	"""Pick the newest log, warning when several were active recently."""
	try:
		logs = _list_logs(directory)
	except OSError:
		return SessionResolution(path=None, method="none")

	if not logs:
		return SessionResolution(path=None, method="none")

	now = now or utc_now()
	cutoff = (now - ambiguity_window).timestamp()
	recent = [path for path, mtime in logs if mtime > cutoff]

	warning = None
	if len(recent) > 1:
		warning = (
			f"{len(recent)} active sessions detected. Using most recent. "
			"For reliability, pass --session <id> explicitly."
		)
	return SessionResolution(path=logs[0][0], method="fallback", warning=warning)


def resolve_session(
	directory: Path,
	session_id: Optional[str] = None,
	ambiguity_window: timedelta = timedelta(minutes=5),
	now: Optional[datetime] = None,
) -> SessionResolution:
	"""
	Resolve a parent conversation log.

	Args:
		directory: History directory for the project
		session_id: Explicit session id (with or without .jsonl), or None/'current'
		ambiguity_window: Logs modified within this window count as active
		now: Clock override for tests

	Returns:
		SessionResolution; path is None when the project has no history
	"""
	if not directory.is_dir():
		return SessionResolution(path=None, method="none")

	if session_id and session_id != "current":
		filename = session_id if session_id.endswith(".jsonl") else f"{session_id}.jsonl"
		explicit = directory / filename
		if explicit.is_file():
			return SessionResolution(path=explicit, method="explicit")

		fallback = find_most_recent_session(directory, ambiguity_window, now)
		if fallback.path is None:
			return SessionResolution(
				path=None,
				method="none",
				warning=f"Session {session_id} not found and no fallback available.",
			)
		warning = (
			f"Session {session_id} not found, falling back to most recent. "
			"For reliability, pass --session <id> explicitly."
		)
		if fallback.warning:
			warning = f"{warning} {fallback.warning}"
		return SessionResolution(path=fallback.path, method="fallback", warning=warning)

	return find_most_recent_session(directory, ambiguity_window, now)


def take_last_turns(records: list[dict], turns: int) -> list[dict]:
	"""Keep everything from the Nth-from-last user record onward."""
	if not records or turns <= 0:
		return []
	user_indices = [i for i, record in enumerate(records) if is_user_record(record)]
	if len(user_indices) <= turns:
		return list(records)
	return records[user_indices[-turns]:]


def filter_by_time(records: list[dict], window: timedelta, now: Optional[datetime] = None) -> list[dict]:
	"""Keep records with timestamp >= now - window. Untimed records are dropped."""
	cutoff = (now or utc_now()) - window
	kept = []
	for record in records:
		ts = record_time(record)
		if ts is not None and ts >= cutoff:
			kept.append(record)
	return kept


def apply_filters(
	records: list[dict],
	turns: Optional[int] = None,
	since: Optional[str] = None,
	now: Optional[datetime] = None,
) -> list[dict]:
	"""Apply exactly one filter: a valid time window wins over a turn count."""
	if since:
		window = parse_duration(since)
		if window is not None:
			return filter_by_time(records, window, now)
		logger.warning(f"Ignoring invalid context duration '{since}'; using turn filter")
	if turns:
		return take_last_turns(records, turns)
	return list(records)


def truncate_to_token_limit(text: str, max_tokens: int) -> str:
	"""Keep the most recent part of the text, marking the cut at the start."""
	max_chars = max_tokens * CHARS_PER_TOKEN
	if len(text) <= max_chars:
		return text
	tail = text[-max_chars:] if max_chars > 0 else ""
	return f"{TRUNCATION_MARKER}\n\n{tail}"


class ContextResolver:
	"""Builds a ParentContext for a project from its Claude Code history."""

	def __init__(
		self,
		claude_home: Path,
		ambiguity_window_minutes: float = 5.0,
	):
		self.claude_home = Path(claude_home)
		self.ambiguity_window = timedelta(minutes=ambiguity_window_minutes)

	def resolve(self, project: str | Path, session_id: Optional[str] = None) -> SessionResolution:
		resolution = resolve_session(
			history_dir(project, self.claude_home),
			session_id,
			self.ambiguity_window,
		)
		if resolution.warning:
			logger.warning(f"Session resolution: {resolution.warning}")
		return resolution

	def build(
		self,
		project: str | Path,
		options: Optional[ContextOptions] = None,
		now: Optional[datetime] = None,
	) -> ParentContext:
		"""
		Build the bounded context block for a project.

		Never raises for missing or malformed history; returns the
		"no history" ParentContext instead.
		"""
		options = options or ContextOptions()
		resolution = self.resolve(project, options.session_id)

		if resolution.path is None:
			logger.warning(f"No Claude Code conversation history found for {project}")
			return ParentContext.none(resolution.warning)

		logger.info(f"Using parent session {resolution.path.name} ({resolution.method})")

		try:
			records = read_jsonl(resolution.path)
		except OSError as e:
			logger.error(f"Error reading parent session {resolution.path}: {e}")
			return ParentContext.none(resolution.warning)

		records = apply_filters(records, options.turns, options.since, now)
		text = format_context(records)
		if estimate_tokens(text) > options.max_tokens:
			text = truncate_to_token_limit(text, options.max_tokens)

		return ParentContext(
			text=text,
			source=resolution.path,
			method=resolution.method,
			warning=resolution.warning,
		)


def build_context(
	project: str | Path,
	options: Optional[ContextOptions] = None,
	claude_home: Optional[Path] = None,
	ambiguity_window_minutes: float = 5.0,
) -> ParentContext:
	"""Build a ParentContext without keeping a resolver around."""
	resolver = ContextResolver(claude_home or Path.home() / ".claude", ambiguity_window_minutes)
	return resolver.build(project, options)
