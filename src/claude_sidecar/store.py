"""
Session Store - Durable on-disk state for sidecar tasks.

Layout under <project>/.claude/sidecar_sessions/<taskId>/:
- metadata.json       Session record, rewritten on each status-relevant update
- conversation.jsonl  Append-only {role, content, timestamp} records
- initial_context.md  Prompt sent to the engine at task start, written once
- summary.md          Folded result
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .config import SESSIONS_DIRNAME
from .errors import InvalidTransitionError, SessionExistsError, SessionNotFoundError
from .models import (
	Conflict,
	ContextDrift,
	ConversationRecord,
	Session,
	SessionStatus,
	parse_timestamp,
	utc_now,
)

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
CONVERSATION_FILE = "conversation.jsonl"
INITIAL_CONTEXT_FILE = "initial_context.md"
SUMMARY_FILE = "summary.md"

# Session directories created by this process
_created: set[Path] = set()
_created_lock = threading.Lock()


class SessionStore:
	"""
	File-backed store for the sessions of one project.

	Usage:
		store = SessionStore("/path/to/project")
		session = store.create(Session(task_id="ab12cd34", model="...", project="..."))
		store.append_message(session.task_id, ConversationRecord(role="user", content="hi"))
		store.write_summary(session.task_id, "## Sidecar Results: ...")
		store.mark_complete(session.task_id)
	"""

	def __init__(self, project: str | Path):
		self.project = Path(project).expanduser().resolve()
		self.root = self.project / SESSIONS_DIRNAME
		self._lock = threading.Lock()

	def session_dir(self, task_id: str) -> Path:
		return self.root / task_id

	def exists(self, task_id: str) -> bool:
		return (self.session_dir(task_id) / METADATA_FILE).exists()

	# ------------------------------------------------------------------
	# Writers
	# ------------------------------------------------------------------

	def create(self, session: Session) -> Session:
		"""
		Create the session directory, metadata.json and an empty conversation log.

		Raises:
			SessionExistsError: If the id was already created by this process
				or already exists on disk.
		"""
		session_dir = self.session_dir(session.task_id)
		with _created_lock:
			if session_dir in _created or session_dir.exists():
				raise SessionExistsError(f"Session {session.task_id} already exists")
			_created.add(session_dir)

		session_dir.mkdir(parents=True, exist_ok=False)
		self._write_metadata(session)
		(session_dir / CONVERSATION_FILE).touch()
		logger.info(f"Created session {session.task_id} in {session_dir}")
		return session

	def append_message(self, task_id: str, record: ConversationRecord) -> None:
		"""Append one record to conversation.jsonl. Disk errors are logged, not raised."""
		path = self.session_dir(task_id) / CONVERSATION_FILE
		line = record.model_dump_json(by_alias=True) + "\n"
		try:
			with self._lock, open(path, "a", encoding="utf-8") as f:
				f.write(line)
		except OSError as e:
			logger.error(f"Failed to append message to {path}: {e}")

	def write_initial_context(self, task_id: str, content: str) -> None:
		"""Write initial_context.md. Later calls for the same task are ignored."""
		path = self.session_dir(task_id) / INITIAL_CONTEXT_FILE
		if path.exists():
			logger.debug(f"initial_context.md already written for {task_id}")
			return
		path.write_text(content, encoding="utf-8")

	def write_summary(self, task_id: str, summary: str) -> None:
		"""Write summary.md, replacing any previous summary."""
		self._require(task_id)
		(self.session_dir(task_id) / SUMMARY_FILE).write_text(summary, encoding="utf-8")

	def update_metadata(self, task_id: str, **updates) -> Session:
		"""
		Apply field updates to metadata.json.

		File sets are merged rather than replaced. Status changes must go
		through mark_complete/mark_failed.
		"""
		if "status" in updates:
			raise InvalidTransitionError("Use mark_complete/mark_failed to change status")

		with self._lock:
			session = self.read_metadata(task_id)
			for key in ("files_read", "files_written"):
				if key in updates:
					getattr(session, key).update(updates.pop(key))
			for key, value in updates.items():
				setattr(session, key, value)
			self._write_metadata(session)
		return session

	def add_file_activity(
		self,
		task_id: str,
		read: Optional[set[str]] = None,
		written: Optional[set[str]] = None,
	) -> None:
		"""Record files the engine touched. Paths are project-relative."""
		if not read and not written:
			return
		try:
			self.update_metadata(task_id, files_read=set(read or ()), files_written=set(written or ()))
		except (OSError, SessionNotFoundError) as e:
			logger.error(f"Failed to record file activity for {task_id}: {e}")

	def record_analysis(
		self,
		task_id: str,
		conflicts: Optional[list[Conflict]] = None,
		drift: Optional[ContextDrift] = None,
	) -> Session:
		"""Store fold-time conflicts and drift. None leaves the field untouched."""
		updates = {}
		if conflicts is not None:
			updates["conflicts"] = conflicts
		if drift is not None:
			updates["context_drift"] = drift
		return self.update_metadata(task_id, **updates)

	def record_resume(self, task_id: str) -> Session:
		"""Append a resume timestamp."""
		with self._lock:
			session = self.read_metadata(task_id)
			session.resumed_at.append(utc_now())
			self._write_metadata(session)
		return session

	def mark_complete(self, task_id: str, timed_out: bool = False) -> Session:
		"""Transition running -> complete. Requires summary.md to exist."""
		if not (self.session_dir(task_id) / SUMMARY_FILE).exists():
			raise InvalidTransitionError(f"Session {task_id} has no summary; cannot complete")
		return self._transition(task_id, SessionStatus.COMPLETE, timed_out=timed_out)

	def mark_failed(self, task_id: str, error: str) -> Session:
		"""Transition running -> failed, recording the error."""
		return self._transition(task_id, SessionStatus.FAILED, error=error)

	def _transition(self, task_id: str, status: SessionStatus, **extra) -> Session:
		with self._lock:
			session = self.read_metadata(task_id)
			if session.status != SessionStatus.RUNNING:
				raise InvalidTransitionError(
					f"Session {task_id} is {session.status.value}; cannot move to {status.value}"
				)
			session.status = status
			session.completed_at = utc_now()
			for key, value in extra.items():
				if value is not None:
					setattr(session, key, value)
			self._write_metadata(session)
		logger.info(f"Session {task_id} -> {status.value}")
		return session

	def _write_metadata(self, session: Session) -> None:
		path = self.session_dir(session.task_id) / METADATA_FILE
		tmp = path.with_suffix(".json.tmp")
		tmp.write_text(session.to_json(), encoding="utf-8")
		os.replace(tmp, path)

	# ------------------------------------------------------------------
	# Readers (side-effect free)
	# ------------------------------------------------------------------

	def _require(self, task_id: str) -> Path:
		session_dir = self.session_dir(task_id)
		if not (session_dir / METADATA_FILE).exists():
			raise SessionNotFoundError(f"Session {task_id} not found")
		return session_dir

	def read_metadata(self, task_id: str) -> Session:
		"""Load metadata.json for a task."""
		path = self._require(task_id) / METADATA_FILE
		try:
			return Session.model_validate_json(path.read_text(encoding="utf-8"))
		except ValidationError as e:
			raise SessionNotFoundError(f"Session {task_id} metadata is unreadable: {e}") from e

	def read_conversation(self, task_id: str) -> list[ConversationRecord]:
		"""Load conversation.jsonl, skipping malformed lines."""
		path = self._require(task_id) / CONVERSATION_FILE
		if not path.exists():
			return []
		records = []
		for line in path.read_text(encoding="utf-8").splitlines():
			if not line.strip():
				continue
			try:
				records.append(ConversationRecord.model_validate(json.loads(line)))
			except (json.JSONDecodeError, ValidationError):
				logger.debug(f"Skipping malformed conversation line in {task_id}")
		return records

	def read_summary(self, task_id: str) -> Optional[str]:
		path = self._require(task_id) / SUMMARY_FILE
		return path.read_text(encoding="utf-8") if path.exists() else None

	def read_initial_context(self, task_id: str) -> str:
		path = self._require(task_id) / INITIAL_CONTEXT_FILE
		return path.read_text(encoding="utf-8") if path.exists() else ""

	def list_sessions(self, status: Optional[str] = None) -> list[Session]:
		"""List sessions newest first, optionally filtered by status value."""
		if not self.root.is_dir():
			return []

		sessions = []
		for entry in self.root.iterdir():
			if not (entry / METADATA_FILE).exists():
				continue
			try:
				sessions.append(self.read_metadata(entry.name))
			except SessionNotFoundError as e:
				logger.warning(f"Skipping session {entry.name}: {e}")

		if status and status != "all":
			sessions = [s for s in sessions if s.status.value == status]

		return sorted(sessions, key=lambda s: s.created_at, reverse=True)


def render_dialogue(records: list[ConversationRecord]) -> str:
	"""Render a conversation log as plain dialogue: '[role @ HH:MM:SS] content'."""
	lines = []
	for record in records:
		ts = parse_timestamp(record.timestamp)
		time = ts.astimezone().strftime("%H:%M:%S") if ts else ""
		lines.append(f"[{record.role} @ {time}] {record.content}")
	return "\n\n".join(lines)
