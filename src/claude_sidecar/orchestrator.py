"""
Orchestrator - Drives one sidecar task from briefing to folded summary.

Each task is a sequential state machine:

	INIT -> CONTEXT_BUILT -> ENGINE_READY -> AWAITING_COMPLETION -> FOLDING -> COMPLETE
	any state after INIT can end in FAILED

Interactive tasks wait for a fold signal from a human-facing surface.
Headless tasks poll the engine for the completion marker and force a fold
when the timeout elapses. Either way the engine is shut down from a single
cleanup routine on every exit path.
"""

import asyncio
import contextlib
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from .analysis import (
	build_resume_notice,
	calculate_drift,
	check_file_drift,
	detect_conflicts,
	format_conflict_warning,
	format_drift_warning,
)
from .config import Config, get_config
from .context import CHARS_PER_TOKEN, ContextOptions, ContextResolver, ParentContext
from .engine import EngineSupervisor, assistant_texts, extract_file_activity, message_id
from .errors import (
	ConflictDetectionFailed,
	DriftComputationFailed,
	EngineRequestError,
	FatalTaskError,
	FoldExtractionFailed,
	InvalidTransitionError,
)
from .models import (
	Conflict,
	ContextDrift,
	ConversationRecord,
	Session,
	SessionMode,
	SessionStatus,
	SummaryLength,
)
from .prompts import (
	COMPLETE_MARKER,
	FOLD_REQUEST,
	Prompts,
	build_continuation_context,
	build_forced_fold_request,
	build_prompts,
	build_resume_prompt,
)
from .store import SessionStore, render_dialogue

logger = logging.getLogger(__name__)

RESUME_MESSAGE = "Resume the task where you left off. Original task:\n\n{briefing}"


class TaskState(str, Enum):
	INIT = "init"
	CONTEXT_BUILT = "context_built"
	ENGINE_READY = "engine_ready"
	AWAITING_COMPLETION = "awaiting_completion"
	FOLDING = "folding"
	COMPLETE = "complete"
	FAILED = "failed"


class TaskControl:
	"""
	Signals from outside the task.

	fold_event is set by a fold request or a cancellation; cancelled is
	checked at every suspension point of the task.
	"""

	def __init__(self):
		self.fold_event = asyncio.Event()
		self.cancelled = False

	def request_fold(self) -> None:
		self.fold_event.set()

	def cancel(self) -> None:
		self.cancelled = True
		self.fold_event.set()


class InteractiveSurface(Protocol):
	"""Human-facing front end for interactive tasks."""

	async def run(self, task: "TaskRun") -> None:
		"""Relay user input through task.send_user_message() until task.request_fold()."""
		...


@dataclass
class TaskRequest:
	"""Everything needed to start a task."""
	model: str
	briefing: str
	project: str | Path
	mode: SessionMode = SessionMode.INTERACTIVE
	agent: Optional[str] = None
	summary_length: SummaryLength = SummaryLength.NORMAL
	context: ContextOptions = field(default_factory=ContextOptions)
	timeout_minutes: Optional[float] = None
	mcp_config: Optional[dict] = None


@dataclass
class TaskResult:
	"""What the caller gets back after a fold."""
	summary: str
	task_id: str
	timed_out: bool = False
	conflicts: list[Conflict] = field(default_factory=list)
	drift: Optional[ContextDrift] = None
	status: SessionStatus = SessionStatus.COMPLETE

	def warnings(self) -> list[str]:
		return [w for w in (format_conflict_warning(self.conflicts), format_drift_warning(self.drift)) if w]


def new_task_id() -> str:
	return secrets.token_hex(4)


def placeholder_summary(operation: str) -> str:
	return f"## Sidecar Results: No Output\n\n{operation} completed without summary."


def extract_summary(texts: list[str]) -> str:
	"""
	Pull the summary out of assistant output.

	Keeps what precedes the completion marker in the most recent text.

	Raises:
		FoldExtractionFailed: If there is no usable text
	"""
	if not texts:
		raise FoldExtractionFailed("Engine produced no assistant text")

	summary = texts[-1].split(COMPLETE_MARKER)[0].strip()
	if not summary:
		raise FoldExtractionFailed("Assistant text before the completion marker is empty")
	return summary


class TaskRun:
	"""One task in flight: its session, engine and accumulated output."""

	def __init__(
		self,
		session: Session,
		store: SessionStore,
		supervisor: EngineSupervisor,
		control: TaskControl,
		operation: str,
		parent_log: Optional[Path] = None,
		timeout_minutes: float = 15.0,
	):
		self.session = session
		self.store = store
		self.supervisor = supervisor
		self.control = control
		self.operation = operation
		self.parent_log = parent_log
		self.timeout_minutes = timeout_minutes
		self.state = TaskState.INIT
		self.outputs: list[str] = []
		self.timed_out = False
		self._seen: set[str] = set()

	@property
	def task_id(self) -> str:
		return self.session.task_id

	@property
	def mode(self) -> SessionMode:
		return self.session.mode

	def transition(self, state: TaskState) -> None:
		logger.info(f"Task {self.task_id}: {self.state.value} -> {state.value}")
		self.state = state

	def request_fold(self) -> None:
		self.control.request_fold()

	def record(self, role: str, content: str) -> None:
		self.store.append_message(self.task_id, ConversationRecord(role=role, content=content))

	def absorb(self, messages: list[Any], listing: bool = False) -> None:
		"""
		Log new assistant text and file activity from engine messages.

		Messages are recognised by their engine id. Without an id, a message
		from a full listing is keyed by its position; a direct reply is always
		new.
		"""
		messages = [m for m in messages if isinstance(m, dict)]
		if not messages:
			return
		for index, message in enumerate(messages):
			key = message_id(message) or (f"#{index}" if listing else None)
			if key is not None and key in self._seen:
				continue
			texts = assistant_texts([message])
			if not texts:
				continue
			if key is not None:
				self._seen.add(key)
			self.outputs.append(texts[0])
			self.record("assistant", texts[0])

		read, written = extract_file_activity(messages, self.store.project)
		self.store.add_file_activity(self.task_id, read=read, written=written)

	def has_marker(self) -> bool:
		return any(COMPLETE_MARKER in text for text in self.outputs)

	async def send_user_message(self, text: str) -> str:
		"""
		Send one user message and return the reply text.

		Failures come back as an inline error string; the task keeps running.
		"""
		self.record("user", text)
		try:
			reply = await self.supervisor.send_message(text)
		except EngineRequestError as e:
			logger.warning(f"Task {self.task_id}: message failed: {e}")
			return f"[Error: {e}]"
		self.absorb([reply])
		return "\n".join(assistant_texts([reply])) if isinstance(reply, dict) else ""

	async def poll(self) -> None:
		try:
			messages = await self.supervisor.get_messages()
		except EngineRequestError as e:
			logger.debug(f"Task {self.task_id}: poll failed: {e}")
			return
		self.absorb(messages, listing=True)


async def _race(task: asyncio.Task, control: TaskControl, timeout: Optional[float] = None) -> bool:
	"""Wait for task, a control signal or the timeout. True when the task finished."""
	waiter = asyncio.create_task(control.fold_event.wait())
	try:
		done, _ = await asyncio.wait({task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
	finally:
		waiter.cancel()
	return task in done


async def _cancel(task: Optional[asyncio.Task]) -> None:
	if task is None:
		return
	if task.done():
		if not task.cancelled():
			# Mark any exception as retrieved
			task.exception()
		return
	task.cancel()
	with contextlib.suppress(asyncio.CancelledError, Exception):
		await task


class Orchestrator:
	"""
	Runs sidecar tasks.

	Usage:
		orchestrator = Orchestrator(config)
		result = await orchestrator.start(TaskRequest(
			model="openrouter/google/gemini-2.5-pro",
			briefing="Find why the auth tests are flaky",
			project="/path/to/project",
			mode=SessionMode.HEADLESS,
		))
		print(result.summary)
	"""

	def __init__(
		self,
		config: Optional[Config] = None,
		surface: Optional[InteractiveSurface] = None,
		on_heartbeat: Optional[Callable[[], None]] = None,
		resolver: Optional[ContextResolver] = None,
	):
		self.config = config or get_config()
		self.surface = surface
		self.on_heartbeat = on_heartbeat
		self.resolver = resolver or ContextResolver(
			self.config.claude_home,
			self.config.ambiguity_window_minutes,
		)

	# ------------------------------------------------------------------
	# Entry points
	# ------------------------------------------------------------------

	async def start(self, request: TaskRequest, control: Optional[TaskControl] = None) -> TaskResult:
		"""Start a new task with context from the parent conversation."""
		parent = self.resolver.build(request.project, request.context)
		if parent.warning:
			logger.warning(parent.warning)
		operation = "Headless mode" if request.mode == SessionMode.HEADLESS else "Session"
		return await self._launch(request, parent.render(), parent, operation, control=control)

	async def continue_(
		self,
		task_id: str,
		briefing: str,
		project: str | Path,
		model: Optional[str] = None,
		mode: SessionMode = SessionMode.INTERACTIVE,
		context: Optional[ContextOptions] = None,
		timeout_minutes: Optional[float] = None,
		control: Optional[TaskControl] = None,
	) -> TaskResult:
		"""
		Start a new task that builds on a previous one.

		The previous session's files are only read. The new session records
		continuesFrom.

		Raises:
			SessionNotFoundError: If task_id does not exist
		"""
		store = SessionStore(project)
		previous = store.read_metadata(task_id)
		previous_summary = store.read_summary(task_id) or ""
		previous_dialogue = render_dialogue(store.read_conversation(task_id))

		options = context or ContextOptions(
			turns=self.config.context_turns,
			max_tokens=self.config.context_max_tokens,
		)
		parent = self.resolver.build(project, options)
		if parent.warning:
			logger.warning(parent.warning)

		context_text = build_continuation_context(
			previous_task_id=task_id,
			previous_briefing=previous.briefing,
			previous_summary=previous_summary,
			previous_dialogue=previous_dialogue,
			parent_context=parent.render(),
			briefing=briefing,
			max_chars=options.max_tokens * CHARS_PER_TOKEN,
		)
		request = TaskRequest(
			model=model or previous.model,
			briefing=briefing,
			project=project,
			mode=mode,
			agent=previous.agent,
			summary_length=previous.summary_length,
			context=options,
			timeout_minutes=timeout_minutes,
		)
		return await self._launch(
			request,
			context_text,
			parent,
			"Continued session",
			continues_from=task_id,
			control=control,
		)

	async def resume(
		self,
		task_id: str,
		project: str | Path,
		mode: Optional[SessionMode] = None,
		timeout_minutes: Optional[float] = None,
		control: Optional[TaskControl] = None,
	) -> TaskResult:
		"""
		Reopen an existing task under the same id.

		Raises:
			SessionNotFoundError: If task_id does not exist
		"""
		store = SessionStore(project)
		session = store.read_metadata(task_id)
		if mode is not None:
			session.mode = mode

		initial = Prompts.from_markdown(store.read_initial_context(task_id), session.briefing)
		changed = check_file_drift(session.files_read, store.project, session.last_activity)
		notice = build_resume_notice(changed, session.last_activity) if changed else ""
		if changed:
			logger.warning(f"Files changed since last activity: {', '.join(changed)}")

		system = build_resume_prompt(
			initial.system,
			render_dialogue(store.read_conversation(task_id)),
			notice,
		)
		session = store.record_resume(task_id).model_copy(update={"mode": session.mode})
		parent_log = Path(session.parent_session) if session.parent_session else None
		if parent_log is not None and not parent_log.is_file():
			parent_log = None

		run = self._new_run(session, store, "Resumed session", parent_log, timeout_minutes, control)
		run.record("system", f"Session resumed.\n\n{notice}".strip())
		run.transition(TaskState.CONTEXT_BUILT)
		return await self._run(run, system, RESUME_MESSAGE.format(briefing=initial.user_message))

	# ------------------------------------------------------------------
	# Task lifecycle
	# ------------------------------------------------------------------

	async def _launch(
		self,
		request: TaskRequest,
		context_text: str,
		parent: ParentContext,
		operation: str,
		continues_from: Optional[str] = None,
		control: Optional[TaskControl] = None,
	) -> TaskResult:
		store = SessionStore(request.project)
		prompts = build_prompts(
			request.briefing,
			context_text,
			store.project,
			request.mode,
			request.summary_length,
		)
		session = store.create(Session(
			task_id=new_task_id(),
			model=request.model,
			project=str(store.project),
			briefing=request.briefing,
			mode=request.mode,
			agent=request.agent,
			summary_length=request.summary_length,
			parent_session=str(parent.source) if parent.source else None,
			continues_from=continues_from,
		))
		store.write_initial_context(session.task_id, prompts.to_markdown())

		run = self._new_run(
			session,
			store,
			operation,
			parent.source,
			request.timeout_minutes,
			control,
			mcp_config=request.mcp_config,
		)
		run.record("system", prompts.system)
		run.record("user", prompts.user_message)
		run.transition(TaskState.CONTEXT_BUILT)
		return await self._run(run, prompts.system, prompts.user_message)

	def _new_run(
		self,
		session: Session,
		store: SessionStore,
		operation: str,
		parent_log: Optional[Path],
		timeout_minutes: Optional[float],
		control: Optional[TaskControl],
		mcp_config: Optional[dict] = None,
	) -> TaskRun:
		supervisor = EngineSupervisor(
			self.config,
			store.project,
			session.model,
			agent=session.agent,
			mcp_config=mcp_config,
		)
		return TaskRun(
			session,
			store,
			supervisor,
			control or TaskControl(),
			operation,
			parent_log=parent_log,
			timeout_minutes=timeout_minutes or self.config.default_timeout_minutes,
		)

	async def _run(self, run: TaskRun, system: str, user_message: str) -> TaskResult:
		heartbeat: Optional[asyncio.Task] = None
		try:
			if not await self._bring_up(run):
				return await self._fold(run)

			if self.on_heartbeat is not None:
				heartbeat = asyncio.create_task(self._heartbeat())

			run.transition(TaskState.AWAITING_COMPLETION)
			if run.mode == SessionMode.HEADLESS:
				await self._await_headless(run, system, user_message)
			else:
				await self._await_interactive(run, system, user_message)
			return await self._fold(run)
		except FatalTaskError as e:
			self._fail(run, e)
			raise
		finally:
			await _cancel(heartbeat)
			await run.supervisor.shutdown()

	async def _bring_up(self, run: TaskRun) -> bool:
		"""Spawn the engine and open its session. False when cancelled midway."""
		steps = (
			run.supervisor.spawn,
			run.supervisor.wait_until_healthy,
			run.supervisor.create_remote_session,
		)
		for step in steps:
			if run.control.cancelled:
				return False
			await step()
		run.transition(TaskState.ENGINE_READY)
		return not run.control.cancelled

	async def _heartbeat(self) -> None:
		while True:
			await asyncio.sleep(self.config.heartbeat_interval)
			self.on_heartbeat()

	async def _await_interactive(self, run: TaskRun, system: str, user_message: str) -> None:
		initial = asyncio.create_task(run.supervisor.send_initial_message(system, user_message))
		try:
			if not await _race(initial, run.control):
				return
			run.absorb([initial.result()])
		finally:
			await _cancel(initial)

		if self.surface is None:
			logger.warning(f"Task {run.task_id}: no interactive surface; waiting for fold signal")
			await run.control.fold_event.wait()
			return

		surface_task = asyncio.create_task(self.surface.run(run))
		try:
			await _race(surface_task, run.control)
			if surface_task.done() and not surface_task.cancelled() and surface_task.exception():
				logger.error(f"Task {run.task_id}: surface failed: {surface_task.exception()}")
		finally:
			await _cancel(surface_task)

	async def _await_headless(self, run: TaskRun, system: str, user_message: str) -> None:
		loop = asyncio.get_running_loop()
		deadline = loop.time() + run.timeout_minutes * 60
		initial = asyncio.create_task(run.supervisor.send_initial_message(system, user_message))
		absorbed = False
		try:
			while True:
				if initial.done() and not absorbed:
					# Retries exhausted surfaces here as InitialMessageFailed
					absorbed = True
					run.absorb([initial.result()])
				if run.control.fold_event.is_set():
					return

				remaining = deadline - loop.time()
				if remaining <= 0:
					break
				with contextlib.suppress(asyncio.TimeoutError):
					await asyncio.wait_for(run.poll(), timeout=remaining)
				if run.has_marker():
					logger.info(f"Task {run.task_id}: completion marker received")
					return

				remaining = deadline - loop.time()
				if remaining <= 0:
					break
				with contextlib.suppress(asyncio.TimeoutError):
					await asyncio.wait_for(
						run.control.fold_event.wait(),
						timeout=min(self.config.poll_interval, remaining),
					)
		finally:
			await _cancel(initial)

		run.timed_out = True
		logger.warning(f"Task {run.task_id}: timed out after {run.timeout_minutes} minutes; forcing fold")
		await self._request_summary(run, build_forced_fold_request(run.session.summary_length))

	async def _request_summary(self, run: TaskRun, prompt: str) -> None:
		"""Ask the engine for a summary, bounded by the grace period. Failures are absorbed."""
		loop = asyncio.get_running_loop()
		deadline = loop.time() + self.config.grace_period
		run.record("user", prompt)
		try:
			reply = await asyncio.wait_for(run.supervisor.send_message(prompt), timeout=self.config.grace_period)
			run.absorb([reply])
		except (EngineRequestError, asyncio.TimeoutError) as e:
			logger.warning(f"Task {run.task_id}: summary request failed: {e!r}")

		remaining = deadline - loop.time()
		if remaining <= 0:
			return
		with contextlib.suppress(asyncio.TimeoutError):
			await asyncio.wait_for(run.poll(), timeout=remaining)

	# ------------------------------------------------------------------
	# Fold and failure
	# ------------------------------------------------------------------

	async def _fold(self, run: TaskRun) -> TaskResult:
		run.transition(TaskState.FOLDING)

		engine_up = run.supervisor.session_id is not None
		if run.mode == SessionMode.INTERACTIVE and engine_up and not run.control.cancelled:
			await self._request_summary(run, FOLD_REQUEST)

		try:
			summary = extract_summary(run.outputs)
		except FoldExtractionFailed as e:
			logger.warning(f"Task {run.task_id}: {e}; using placeholder summary")
			summary = placeholder_summary(run.operation)

		session = run.store.read_metadata(run.task_id)
		conflicts = self._conflicts(run, session)
		drift = self._drift(run, session)
		run.store.record_analysis(run.task_id, conflicts=conflicts, drift=drift)

		run.store.write_summary(run.task_id, summary)
		await run.supervisor.shutdown()
		if session.status == SessionStatus.RUNNING:
			session = run.store.mark_complete(run.task_id, timed_out=run.timed_out)
		else:
			logger.info(f"Task {run.task_id} stays {session.status.value}; summary updated")
		run.transition(TaskState.COMPLETE)

		result = TaskResult(
			summary=summary,
			task_id=run.task_id,
			timed_out=run.timed_out,
			conflicts=conflicts or [],
			drift=drift,
			status=session.status,
		)
		for warning in result.warnings():
			logger.warning(warning)
		return result

	def _conflicts(self, run: TaskRun, session: Session) -> Optional[list[Conflict]]:
		try:
			return detect_conflicts(session.files_written, run.store.project, session.created_at)
		except ConflictDetectionFailed as e:
			logger.error(f"Task {run.task_id}: {e}")
			return None

	def _drift(self, run: TaskRun, session: Session, now: Optional[datetime] = None) -> Optional[ContextDrift]:
		try:
			return calculate_drift(
				session.created_at,
				run.parent_log,
				now,
				max_age_minutes=self.config.drift_age_minutes,
				max_turns=self.config.drift_turns,
			)
		except DriftComputationFailed as e:
			logger.error(f"Task {run.task_id}: {e}")
			return None

	def _fail(self, run: TaskRun, error: FatalTaskError) -> None:
		run.transition(TaskState.FAILED)
		logger.error(f"Task {run.task_id} failed: {error.describe()}")
		try:
			run.store.mark_failed(run.task_id, error.describe())
		except InvalidTransitionError as e:
			logger.info(f"Task {run.task_id}: status unchanged ({e})")


# ----------------------------------------------------------------------
# Synchronous caller surface
# ----------------------------------------------------------------------

def start_task(
	model: str,
	briefing: str,
	project: str | Path,
	mode: SessionMode = SessionMode.HEADLESS,
	context_options: Optional[ContextOptions] = None,
	timeout: Optional[float] = None,
	config: Optional[Config] = None,
	**kwargs,
) -> TaskResult:
	"""
	Run a task to completion and return its summary.

	Args:
		model: Engine model string, e.g. 'openrouter/google/gemini-2.5-pro'
		briefing: Task description
		project: Project directory
		mode: HEADLESS or INTERACTIVE
		context_options: Parent context selection
		timeout: Headless timeout in minutes
		config: Config override
		**kwargs: surface/on_heartbeat for the Orchestrator, agent/summary_length/mcp_config for the request

	Returns:
		TaskResult

	Raises:
		FatalTaskError: If the engine could not be brought up or prompted
	"""
	config = config or get_config()
	orchestrator = Orchestrator(
		config,
		surface=kwargs.pop("surface", None),
		on_heartbeat=kwargs.pop("on_heartbeat", None),
	)
	request = TaskRequest(
		model=model,
		briefing=briefing,
		project=project,
		mode=mode,
		context=context_options or ContextOptions(
			turns=config.context_turns,
			max_tokens=config.context_max_tokens,
		),
		timeout_minutes=timeout,
		**kwargs,
	)
	return asyncio.run(orchestrator.start(request))


def resume_task(
	task_id: str,
	project: str | Path,
	mode: Optional[SessionMode] = None,
	timeout: Optional[float] = None,
	config: Optional[Config] = None,
	surface: Optional[InteractiveSurface] = None,
	on_heartbeat: Optional[Callable[[], None]] = None,
) -> TaskResult:
	orchestrator = Orchestrator(config, surface=surface, on_heartbeat=on_heartbeat)
	return asyncio.run(orchestrator.resume(task_id, project, mode=mode, timeout_minutes=timeout))


def continue_task(
	task_id: str,
	briefing: str,
	project: str | Path,
	model: Optional[str] = None,
	mode: SessionMode = SessionMode.HEADLESS,
	timeout: Optional[float] = None,
	config: Optional[Config] = None,
	surface: Optional[InteractiveSurface] = None,
	on_heartbeat: Optional[Callable[[], None]] = None,
) -> TaskResult:
	orchestrator = Orchestrator(config, surface=surface, on_heartbeat=on_heartbeat)
	return asyncio.run(orchestrator.continue_(
		task_id,
		briefing,
		project,
		model=model,
		mode=mode,
		timeout_minutes=timeout,
	))
