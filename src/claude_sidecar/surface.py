"""Minimal console surface for interactive sidecar tasks."""

import asyncio
from typing import TYPE_CHECKING, Optional

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel

if TYPE_CHECKING:
	from .orchestrator import TaskRun

FOLD_COMMANDS = {"/fold", "/done"}
HELP_TEXT = "Type a message and press Enter. /fold ends the session and returns a summary."


class ConsoleSurface:
	"""
	Reads user messages from the terminal and shows engine replies.

	Everything is printed to stderr; stdout carries only the folded summary.
	"""

	def __init__(self, console: Optional[Console] = None):
		self.console = console or Console(stderr=True)

	async def _read_line(self) -> Optional[str]:
		try:
			return await asyncio.to_thread(self.console.input, "[bold cyan]you>[/bold cyan] ")
		except EOFError:
			return None

	async def run(self, task: "TaskRun") -> None:
		self.console.print(Panel(HELP_TEXT, title=f"Sidecar {task.task_id}", border_style="blue"))
		for text in task.outputs:
			self.console.print(Markdown(text))

		while not task.control.fold_event.is_set():
			line = await self._read_line()
			if line is None or line.strip() in FOLD_COMMANDS:
				task.request_fold()
				return
			if not line.strip():
				continue

			with self.console.status("Waiting for the model..."):
				reply = await task.send_user_message(line)
			if reply.startswith("[Error:"):
				self.console.print(f"[red]{escape(reply)}[/red]")
			elif reply:
				self.console.print(Markdown(reply))
