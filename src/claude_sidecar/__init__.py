"""claude-sidecar - Delegate tasks from Claude Code to other models and fold the results back."""

from .context import ContextOptions
from .models import SessionMode, SessionStatus, SummaryLength
from .orchestrator import Orchestrator, TaskRequest, TaskResult, continue_task, resume_task, start_task

__version__ = "0.1.0"

__all__ = [
	"ContextOptions",
	"Orchestrator",
	"SessionMode",
	"SessionStatus",
	"SummaryLength",
	"TaskRequest",
	"TaskResult",
	"continue_task",
	"resume_task",
	"start_task",
]
