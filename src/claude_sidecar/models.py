"""
Session Models - Pydantic schemas for persisted sidecar sessions.

metadata.json and conversation.jsonl use camelCase keys; Python code uses
the snake_case attribute names.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer


def utc_now() -> datetime:
	return datetime.now(timezone.utc)


def isoformat(dt: datetime) -> str:
	return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value) -> Optional[datetime]:
	"""Parse an ISO timestamp (with or without trailing Z). Returns None if invalid."""
	if not value or not isinstance(value, str):
		return None
	try:
		dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
	except ValueError:
		return None
	if dt.tzinfo is None:
		dt = dt.replace(tzinfo=timezone.utc)
	return dt


class SessionMode(str, Enum):
	"""How completion is driven."""
	INTERACTIVE = "interactive"
	HEADLESS = "headless"


class SessionStatus(str, Enum):
	"""Status of a session. Only running -> complete/failed is allowed."""
	RUNNING = "running"
	COMPLETE = "complete"
	FAILED = "failed"


class SummaryLength(str, Enum):
	BRIEF = "brief"
	NORMAL = "normal"
	VERBOSE = "verbose"


class _CamelModel(BaseModel):
	model_config = ConfigDict(populate_by_name=True)


class Conflict(_CamelModel):
	"""A file the sidecar wrote that also changed outside the session."""
	file: str
	action: str = Field(description="'modified' or 'deleted'")
	external_mtime: Optional[datetime] = Field(default=None, alias="externalMtime")

	@field_serializer("external_mtime")
	def _ser_mtime(self, value: Optional[datetime]) -> Optional[str]:
		return isoformat(value) if value else None


class ContextDrift(_CamelModel):
	"""How stale the sidecar's context is relative to the parent session."""
	age_minutes: int = Field(alias="ageMinutes")
	main_turns: int = Field(alias="mainTurns")
	is_significant: bool = Field(alias="isSignificant")


class ConversationRecord(_CamelModel):
	"""One line of conversation.jsonl."""
	role: str
	content: str
	timestamp: str = Field(default_factory=lambda: isoformat(utc_now()))


class Session(_CamelModel):
	"""
	One delegated task, as stored in metadata.json.

	Identity fields are immutable after creation; status, completed_at,
	file activity and the advisory fields are updated by the store.
	"""
	task_id: str = Field(alias="taskId")
	model: str
	project: str
	briefing: str = ""
	mode: SessionMode = SessionMode.INTERACTIVE
	agent: Optional[str] = None
	summary_length: SummaryLength = Field(default=SummaryLength.NORMAL, alias="summaryLength")

	status: SessionStatus = SessionStatus.RUNNING
	created_at: datetime = Field(default_factory=utc_now, alias="createdAt")
	completed_at: Optional[datetime] = Field(default=None, alias="completedAt")

	files_read: set[str] = Field(default_factory=set, alias="filesRead")
	files_written: set[str] = Field(default_factory=set, alias="filesWritten")
	conflicts: list[Conflict] = Field(default_factory=list)
	context_drift: Optional[ContextDrift] = Field(default=None, alias="contextDrift")

	parent_session: Optional[str] = Field(default=None, alias="parentSession")
	continues_from: Optional[str] = Field(default=None, alias="continuesFrom")
	resumed_at: list[datetime] = Field(default_factory=list, alias="resumedAt")
	timed_out: bool = Field(default=False, alias="timedOut")
	error: Optional[str] = None

	@field_serializer("files_read", "files_written")
	def _ser_files(self, value: set[str]) -> list[str]:
		return sorted(value)

	@field_serializer("created_at", "completed_at")
	def _ser_dt(self, value: Optional[datetime]) -> Optional[str]:
		return isoformat(value) if value else None

	@field_serializer("resumed_at")
	def _ser_resumed(self, value: list[datetime]) -> list[str]:
		return [isoformat(v) for v in value]

	@property
	def is_terminal(self) -> bool:
		return self.status != SessionStatus.RUNNING

	@property
	def last_activity(self) -> datetime:
		"""Most recent of completion and resume times, falling back to creation."""
		candidates = [self.created_at, *self.resumed_at]
		if self.completed_at:
			candidates.append(self.completed_at)
		return max(candidates)

	def to_json(self) -> str:
		return self.model_dump_json(by_alias=True, indent=2)
