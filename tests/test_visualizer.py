"""Tests for the Rich session views."""

from datetime import timedelta
from io import StringIO
from pathlib import Path

from rich.console import Console

from claude_sidecar.models import Conflict, Session, utc_now
from claude_sidecar.store import SessionStore
from claude_sidecar.visualizer import render_session_detail, render_session_list
from claude_sidecar.visualizer.utils import format_duration, format_timestamp, truncate


def _console() -> tuple[Console, StringIO]:
	buffer = StringIO()
	return Console(file=buffer, width=200), buffer


def test_format_helpers():
	now = utc_now()
	assert format_duration(45) == "45s"
	assert format_duration(125) == "2m 5s"
	assert format_duration(3900) == "1h 5m"
	assert format_timestamp(now - timedelta(minutes=3), now) == "3m ago"
	assert format_timestamp(None) == "-"
	assert truncate("a\nb   c") == "a b c"
	assert truncate("x" * 20, 10) == "xxxxxxx..."


def test_session_list_table(tmp_path: Path):
	console, buffer = _console()
	sessions = [Session(task_id="aaaa1111", model="openrouter/x/y", project=str(tmp_path), briefing="Check auth flow")]
	render_session_list(sessions, console=console)
	output = buffer.getvalue()
	assert "aaaa1111" in output
	assert "running" in output
	assert "Check auth flow" in output


def test_session_list_empty():
	console, buffer = _console()
	render_session_list([], console=console)
	assert "No sidecar sessions found." in buffer.getvalue()


def test_session_detail_shows_summary_and_conflicts(tmp_path: Path):
	store = SessionStore(tmp_path)
	store.create(Session(task_id="aaaa1111", model="m", project=str(tmp_path)))
	store.write_summary("aaaa1111", "## Sidecar Results: Found")
	store.record_analysis("aaaa1111", conflicts=[Conflict(file="a.py", action="deleted")])

	console, buffer = _console()
	assert render_session_detail(store, "aaaa1111", console=console) is True
	output = buffer.getvalue()
	assert "Sidecar Results: Found" in output
	assert "a.py (deleted)" in output


def test_session_detail_missing(tmp_path: Path):
	console, buffer = _console()
	assert render_session_detail(SessionStore(tmp_path), "nope0000", console=console) is False
	assert "not found" in buffer.getvalue()
