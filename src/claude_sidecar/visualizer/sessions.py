"""Rich views for sidecar sessions."""

from typing import Optional

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ..analysis import format_conflict_warning, format_drift_warning
from ..errors import SessionNotFoundError
from ..models import Session
from ..store import SessionStore, render_dialogue
from .utils import format_duration, format_timestamp, status_style, truncate


def render_session_list(sessions: list[Session], console: Optional[Console] = None) -> None:
	"""Render a table of sessions, newest first."""
	console = console or Console()

	if not sessions:
		console.print("[dim]No sidecar sessions found.[/dim]")
		return

	table = Table(title="Sidecar Sessions")
	table.add_column("Task ID", style="cyan")
	table.add_column("Status")
	table.add_column("Mode")
	table.add_column("Model")
	table.add_column("Started")
	table.add_column("Duration", justify="right")
	table.add_column("Briefing")

	for session in sessions:
		style = status_style(session.status)
		duration = ""
		if session.completed_at:
			duration = format_duration((session.completed_at - session.created_at).total_seconds())
		table.add_row(
			session.task_id,
			f"[{style}]{session.status.value}[/{style}]",
			session.mode.value,
			session.model,
			format_timestamp(session.created_at),
			duration,
			truncate(session.briefing, 50),
		)

	console.print(table)


def render_session_detail(
	store: SessionStore,
	task_id: str,
	conversation: bool = False,
	console: Optional[Console] = None,
) -> bool:
	"""
	Render a session's summary, or its conversation log.

	Returns:
		False when the session does not exist
	"""
	console = console or Console()
	try:
		session = store.read_metadata(task_id)
	except SessionNotFoundError:
		console.print(f"[red]Session '{task_id}' not found.[/red]")
		return False

	style = status_style(session.status)
	header = (
		f"[bold]{session.task_id}[/bold]  [{style}]{session.status.value}[/{style}]  "
		f"{session.mode.value}  {session.model}"
	)
	if session.continues_from:
		header += f"  (continues {session.continues_from})"
	console.print(header)

	if conversation:
		dialogue = render_dialogue(store.read_conversation(task_id))
		if dialogue:
			console.print(dialogue, markup=False, highlight=False)
		else:
			console.print("[dim]No conversation recorded.[/dim]")
		return True

	summary = store.read_summary(task_id)
	if summary:
		console.print(Panel(Markdown(summary), title="Summary", border_style="blue"))
	else:
		console.print("[dim]No summary yet.[/dim]")

	if session.error:
		console.print(f"[red]{escape(session.error)}[/red]")
	for warning in (format_conflict_warning(session.conflicts), format_drift_warning(session.context_drift)):
		if warning:
			console.print(f"[yellow]{escape(warning)}[/yellow]")
	return True
