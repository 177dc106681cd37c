"""Shared utilities for visualizer views."""

from datetime import datetime
from typing import Optional

from ..models import SessionStatus, utc_now


def format_duration(seconds: float) -> str:
	"""Format a duration for display. e.g. '45s', '2m 3s', '1h 5m'."""
	if seconds < 60.0:
		return f"{seconds:.0f}s"
	minutes = int(seconds // 60)
	if minutes < 60:
		return f"{minutes}m {seconds % 60:.0f}s"
	return f"{minutes // 60}h {minutes % 60}m"


def format_timestamp(dt: Optional[datetime], now: Optional[datetime] = None) -> str:
	"""Format a timestamp as relative time (e.g. '2m ago') or absolute."""
	if dt is None:
		return "-"
	total_secs = int(((now or utc_now()) - dt).total_seconds())

	if total_secs < 0:
		return dt.astimezone().strftime("%Y-%m-%d %H:%M")
	if total_secs < 60:
		return f"{total_secs}s ago"
	if total_secs < 3600:
		return f"{total_secs // 60}m ago"
	if total_secs < 86400:
		return f"{total_secs // 3600}h ago"
	return f"{total_secs // 86400}d ago"


def truncate(text: str, max_len: int = 60) -> str:
	"""Shorten text to one line for table display."""
	if not text:
		return ""
	line = " ".join(text.split())
	if len(line) <= max_len:
		return line
	return line[:max_len - 3] + "..."


STATUS_STYLES = {
	SessionStatus.RUNNING: "yellow",
	SessionStatus.COMPLETE: "green",
	SessionStatus.FAILED: "red",
}


def status_style(status: SessionStatus) -> str:
	"""Return a Rich style string for a session status."""
	return STATUS_STYLES.get(status, "white")
