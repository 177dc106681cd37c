"""
Conflict and drift analysis.

Both results are advisory. Conflict detection compares file modification
times with the session start: mtime is not proof of who changed a file, so
a flagged file only means "look before accepting". Drift measures how long
the sidecar has been running and how many user turns the parent session
has had since.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from .errors import ConflictDetectionFailed, DriftComputationFailed
from .models import Conflict, ContextDrift, utc_now
from .transcript import is_user_record, read_jsonl, record_time

logger = logging.getLogger(__name__)

DEFAULT_DRIFT_AGE_MINUTES = 10
DEFAULT_DRIFT_TURNS = 5


def detect_conflicts(
	files_written: Iterable[str],
	project: Path,
	started_at: datetime,
) -> list[Conflict]:
	"""
	Flag written files changed on disk after the session started.

	Args:
		files_written: Project-relative paths the sidecar wrote
		project: Project root
		started_at: Session start time

	Returns:
		Conflicts: 'modified' when mtime > started_at, 'deleted' when missing

	Raises:
		ConflictDetectionFailed: If the project itself cannot be inspected
	"""
	project = Path(project)
	if not project.is_dir():
		raise ConflictDetectionFailed(f"Project directory not found: {project}")

	conflicts = []
	for rel_path in sorted(set(files_written)):
		path = project / rel_path
		try:
			stat = path.stat()
		except FileNotFoundError:
			conflicts.append(Conflict(file=rel_path, action="deleted"))
			continue
		except OSError as e:
			logger.debug(f"Cannot stat {path}: {e}")
			continue

		mtime = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
		if mtime > started_at:
			conflicts.append(Conflict(file=rel_path, action="modified", external_mtime=mtime))
	return conflicts


def count_turns_since(parent_log: Optional[Path], since: datetime) -> int:
	"""Count user records in the parent log with timestamp at or after `since`."""
	if parent_log is None or not Path(parent_log).is_file():
		return 0
	try:
		records = read_jsonl(Path(parent_log))
	except OSError as e:
		raise DriftComputationFailed(f"Cannot read parent log {parent_log}: {e}") from e

	count = 0
	for record in records:
		if not is_user_record(record):
			continue
		ts = record_time(record)
		if ts is not None and ts >= since:
			count += 1
	return count


def is_drift_significant(
	age_minutes: float,
	main_turns: int,
	max_age_minutes: float = DEFAULT_DRIFT_AGE_MINUTES,
	max_turns: int = DEFAULT_DRIFT_TURNS,
) -> bool:
	"""Either threshold alone makes drift significant."""
	return age_minutes > max_age_minutes or main_turns > max_turns


def calculate_drift(
	started_at: datetime,
	parent_log: Optional[Path],
	now: Optional[datetime] = None,
	max_age_minutes: float = DEFAULT_DRIFT_AGE_MINUTES,
	max_turns: int = DEFAULT_DRIFT_TURNS,
) -> ContextDrift:
	"""Compute context drift for a session."""
	now = now or utc_now()
	age_minutes = round((now - started_at).total_seconds() / 60)
	main_turns = count_turns_since(parent_log, started_at)
	return ContextDrift(
		age_minutes=age_minutes,
		main_turns=main_turns,
		is_significant=is_drift_significant(age_minutes, main_turns, max_age_minutes, max_turns),
	)


def check_file_drift(
	files_read: Iterable[str],
	project: Path,
	last_activity: datetime,
) -> list[str]:
	"""Files the sidecar read that changed after its last activity."""
	changed = []
	for rel_path in sorted(set(files_read)):
		path = Path(project) / rel_path
		try:
			mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
		except OSError:
			continue
		if mtime > last_activity:
			changed.append(rel_path)
	return changed


def format_relative_time(when: datetime, now: Optional[datetime] = None) -> str:
	"""'just now', '5 min ago', '2 hours ago', '3 days ago'."""
	minutes = int(((now or utc_now()) - when).total_seconds() // 60)
	if minutes < 1:
		return "just now"
	if minutes < 60:
		return f"{minutes} min ago"
	hours = minutes // 60
	if hours < 24:
		return f"{hours} hour{'s' if hours > 1 else ''} ago"
	days = hours // 24
	return f"{days} day{'s' if days > 1 else ''} ago"


def format_conflict_warning(conflicts: list[Conflict]) -> str:
	"""Warning block for the diagnostic channel. Empty string when no conflicts."""
	if not conflicts:
		return ""

	lines = [
		"FILE CONFLICT WARNING",
		"The following files were modified by both this sidecar AND externally:",
	]
	for conflict in conflicts:
		if conflict.action == "deleted":
			lines.append(f"- {conflict.file} (deleted)")
		else:
			lines.append(f"- {conflict.file} (external change: {format_relative_time(conflict.external_mtime)})")
	lines.append("")
	lines.append("Review these changes carefully before accepting.")
	return "\n".join(lines)


def format_drift_warning(drift: Optional[ContextDrift]) -> str:
	if drift is None:
		return ""

	lines = [
		f"Context Age: {drift.age_minutes} minutes "
		f"({drift.main_turns} conversation turns in main session)"
	]
	if drift.is_significant:
		lines.append(
			"Drift Warning: Main session has continued significantly since this sidecar "
			"started. Verify recommendations against current project state."
		)
	return "\n".join(lines)


def build_resume_notice(changed_files: list[str], last_activity: datetime, now: Optional[datetime] = None) -> str:
	"""Notice prepended to a resumed session's prompt when read files changed."""
	hours = int(((now or utc_now()) - last_activity).total_seconds() // 3600)
	elapsed = f"{hours} hours" if hours > 0 else "Less than an hour"
	changed = "\n".join(f"- {f}" for f in changed_files)
	return (
		"## RESUME NOTICE\n\n"
		"This session is being resumed after a pause. "
		"**The file system has changed since your last message.**\n\n"
		f"**Time since last activity:** {elapsed}\n\n"
		f"**Changed files:**\n{changed}\n\n"
		"Please verify your previous findings against the current state of these files before continuing."
	)
