"""CLI for claude-sidecar: start, resume, continue, list, read and serve commands."""

import argparse
import json
import sys
from pathlib import Path

from dotenv import load_dotenv

from .config import get_config
from .context import ContextOptions, parse_duration
from .engine import build_mcp_config
from .errors import FatalTaskError, SessionNotFoundError
from .logging_config import setup_logging
from .models import SessionMode, SummaryLength
from .orchestrator import TaskResult, continue_task, resume_task, start_task
from .store import SessionStore


def _heartbeat() -> None:
	sys.stdout.write(".")
	sys.stdout.flush()


def _mode(args: argparse.Namespace) -> SessionMode:
	return SessionMode.HEADLESS if args.headless else SessionMode.INTERACTIVE


def _surface(mode: SessionMode):
	if mode == SessionMode.HEADLESS:
		return None
	from .surface import ConsoleSurface
	return ConsoleSurface()


def _emit(result: TaskResult) -> None:
	"""Summary to stdout, advisories to stderr."""
	sys.stdout.write("\n")
	print(result.summary)
	for warning in result.warnings():
		print(warning, file=sys.stderr)
	if result.timed_out:
		print(f"Task {result.task_id} timed out; summary may be partial.", file=sys.stderr)
	print(f"Task ID: {result.task_id}", file=sys.stderr)


def _fail(message: str) -> None:
	print(message, file=sys.stderr)
	sys.exit(1)


def cmd_start(args: argparse.Namespace) -> None:
	"""Start a new sidecar task."""
	config = get_config()
	if args.context_since and parse_duration(args.context_since) is None:
		print(f"Invalid --context-since format: {args.context_since} (use e.g. 30m, 2h, 1d); using --context-turns", file=sys.stderr)

	mode = _mode(args)
	options = ContextOptions(
		session_id=args.session_id,
		turns=args.context_turns or config.context_turns,
		since=args.context_since,
		max_tokens=args.context_max_tokens or config.context_max_tokens,
	)
	try:
		mcp_servers = build_mcp_config(args.mcp, args.mcp_config)
	except ValueError as e:
		_fail(str(e))
	try:
		result = start_task(
			args.model,
			args.briefing,
			args.project,
			mode=mode,
			context_options=options,
			timeout=args.timeout,
			config=config,
			surface=_surface(mode),
			on_heartbeat=_heartbeat,
			agent=args.agent,
			summary_length=SummaryLength(args.summary_length),
			mcp_config=mcp_servers,
		)
	except FatalTaskError as e:
		_fail(e.describe())
	_emit(result)


def cmd_resume(args: argparse.Namespace) -> None:
	"""Resume an existing task under the same id."""
	mode = _mode(args) if args.headless else None
	try:
		result = resume_task(
			args.task_id,
			args.project,
			mode=mode,
			timeout=args.timeout,
			config=get_config(),
			surface=_surface(mode or SessionMode.INTERACTIVE),
			on_heartbeat=_heartbeat,
		)
	except FatalTaskError as e:
		_fail(e.describe())
	except SessionNotFoundError as e:
		_fail(str(e))
	_emit(result)


def cmd_continue(args: argparse.Namespace) -> None:
	"""Start a new task building on a previous one."""
	mode = _mode(args)
	try:
		result = continue_task(
			args.task_id,
			args.briefing,
			args.project,
			model=args.model,
			mode=mode,
			timeout=args.timeout,
			config=get_config(),
			surface=_surface(mode),
			on_heartbeat=_heartbeat,
		)
	except FatalTaskError as e:
		_fail(e.describe())
	except SessionNotFoundError as e:
		_fail(str(e))
	_emit(result)


def cmd_list(args: argparse.Namespace) -> None:
	"""List sessions for a project."""
	sessions = SessionStore(args.project).list_sessions(args.status)
	if args.json:
		print(json.dumps([json.loads(s.to_json()) for s in sessions], indent=2))
		return

	from .visualizer import render_session_list
	render_session_list(sessions)


def cmd_read(args: argparse.Namespace) -> None:
	"""Show a session's summary or conversation."""
	store = SessionStore(args.project)
	if args.conversation or args.metadata:
		try:
			if args.metadata:
				print(store.read_metadata(args.task_id).to_json())
			else:
				from .store import render_dialogue
				print(render_dialogue(store.read_conversation(args.task_id)))
		except SessionNotFoundError as e:
			_fail(str(e))
		return

	from .visualizer import render_session_detail
	if not render_session_detail(store, args.task_id):
		sys.exit(1)


def cmd_serve(args: argparse.Namespace) -> None:
	"""Run the MCP server (stdio transport)."""
	from .server import mcp
	mcp.run()


def _add_project(parser: argparse.ArgumentParser) -> None:
	parser.add_argument(
		"--project",
		type=Path,
		default=Path.cwd(),
		help="Project directory (default: current directory)",
	)


def _add_run_options(parser: argparse.ArgumentParser) -> None:
	parser.add_argument("--headless", action="store_true", help="Run autonomously until the model signals completion")
	parser.add_argument("--timeout", type=float, default=None, help="Headless timeout in minutes (default: 15)")


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="claude-sidecar",
		description="Delegate a task to another model with context from your Claude Code session",
	)
	parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR (default: LOG_LEVEL or INFO)")
	subparsers = parser.add_subparsers(dest="command")

	# start
	start_parser = subparsers.add_parser("start", help="Start a new sidecar task")
	start_parser.add_argument("--model", required=True, help="Model, e.g. openrouter/google/gemini-2.5-pro")
	start_parser.add_argument("--briefing", required=True, help="What the sidecar should do")
	start_parser.add_argument("--session-id", default=None, help="Parent Claude Code session id (default: most recent)")
	start_parser.add_argument("--context-turns", type=int, default=None, help="Recent user turns to include")
	start_parser.add_argument("--context-since", default=None, help="Time window instead of turns (e.g. 30m, 2h)")
	start_parser.add_argument("--context-max-tokens", type=int, default=None, help="Approximate context token budget")
	start_parser.add_argument("--agent", default=None, help="Engine agent name")
	start_parser.add_argument(
		"--mcp",
		action="append",
		default=None,
		help="Extra MCP server for the sidecar: name=url, name=command or JSON (repeatable)",
	)
	start_parser.add_argument("--mcp-config", type=Path, default=None, help="opencode.json with MCP servers for the sidecar")
	start_parser.add_argument(
		"--summary-length",
		choices=[s.value for s in SummaryLength],
		default=SummaryLength.NORMAL.value,
	)
	_add_project(start_parser)
	_add_run_options(start_parser)
	start_parser.set_defaults(func=cmd_start)

	# resume
	resume_parser = subparsers.add_parser("resume", help="Reopen a task under the same id")
	resume_parser.add_argument("task_id")
	_add_project(resume_parser)
	_add_run_options(resume_parser)
	resume_parser.set_defaults(func=cmd_resume)

	# continue
	continue_parser = subparsers.add_parser("continue", help="Start a new task from a previous one")
	continue_parser.add_argument("task_id")
	continue_parser.add_argument("--briefing", required=True, help="The new task")
	continue_parser.add_argument("--model", default=None, help="Model (default: the previous task's)")
	_add_project(continue_parser)
	_add_run_options(continue_parser)
	continue_parser.set_defaults(func=cmd_continue)

	# list
	list_parser = subparsers.add_parser("list", help="List sidecar sessions")
	list_parser.add_argument("--status", choices=["all", "running", "complete", "failed"], default="all")
	list_parser.add_argument("--json", action="store_true", help="Print metadata as JSON")
	_add_project(list_parser)
	list_parser.set_defaults(func=cmd_list)

	# read
	read_parser = subparsers.add_parser("read", help="Show a session's summary")
	read_parser.add_argument("task_id")
	read_parser.add_argument("--conversation", action="store_true", help="Show the conversation log")
	read_parser.add_argument("--metadata", action="store_true", help="Show metadata.json")
	_add_project(read_parser)
	read_parser.set_defaults(func=cmd_read)

	# serve
	serve_parser = subparsers.add_parser("serve", help="Run MCP server (stdio)")
	serve_parser.set_defaults(func=cmd_serve)

	return parser


def main(argv: list[str] | None = None) -> None:
	"""CLI entry point."""
	parser = build_parser()
	args = parser.parse_args(argv)

	if not args.command:
		parser.print_help()
		sys.exit(1)

	load_dotenv()
	if args.command != "serve":
		setup_logging(level=args.log_level, log_dir=get_config().log_dir)

	args.func(args)
