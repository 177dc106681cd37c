"""Tests for the context resolver."""

import os
import time
from datetime import timedelta
from pathlib import Path

from claude_sidecar.context import (
	NO_HISTORY_TEXT,
	TRUNCATION_MARKER,
	ContextOptions,
	ContextResolver,
	apply_filters,
	build_context,
	encode_project_path,
	estimate_tokens,
	parse_duration,
	resolve_session,
	take_last_turns,
	truncate_to_token_limit,
)
from claude_sidecar.models import utc_now

from .helpers import make_records, write_parent_log


def _age(path: Path, seconds: float) -> None:
	stamp = time.time() - seconds
	os.utime(path, (stamp, stamp))


class TestHelpers:
	def test_encode_project_path(self):
		assert encode_project_path("/Users/me/my_app") == "-Users-me-my-app"

	def test_parse_duration(self):
		assert parse_duration("30m") == timedelta(minutes=30)
		assert parse_duration("2h") == timedelta(hours=2)
		assert parse_duration("1d") == timedelta(days=1)
		assert parse_duration("abc") is None
		assert parse_duration("0m") is None
		assert parse_duration(None) is None

	def test_estimate_tokens(self):
		assert estimate_tokens("") == 0
		assert estimate_tokens("a" * 400) == 100


class TestFilters:
	def test_turn_filter_keeps_last_two(self):
		"""N=2 on five turns keeps the last two user records and everything after."""
		records = make_records(5)
		kept = take_last_turns(records, 2)
		assert len(kept) == 4
		assert kept[0]["message"]["content"] == "question 4"

	def test_turn_filter_with_fewer_turns(self):
		records = make_records(2)
		assert take_last_turns(records, 10) == records

	def test_time_filter_takes_precedence(self):
		"""A valid time window wins over the turn count."""
		now = utc_now()
		records = make_records(5, start=now - timedelta(minutes=100), step=timedelta(minutes=10))
		kept = apply_filters(records, turns=5, since="25m", now=now)
		assert len(kept) == 2

	def test_invalid_since_falls_back_to_turns(self):
		records = make_records(5)
		kept = apply_filters(records, turns=1, since="soon")
		assert len(kept) == 2

	def test_truncation_keeps_tail(self):
		text = "a" * 100 + "b" * 40
		result = truncate_to_token_limit(text, 10)
		assert result.startswith(TRUNCATION_MARKER)
		assert result.endswith("b" * 40)

	def test_truncation_noop_under_limit(self):
		assert truncate_to_token_limit("short", 10) == "short"


class TestResolution:
	def test_explicit_session(self, tmp_path: Path):
		project = tmp_path / "proj"
		home = tmp_path / "home"
		write_parent_log(home, project, "aaa", make_records(1))
		explicit = write_parent_log(home, project, "bbb", make_records(1))
		_age(explicit, 3600)

		directory = explicit.parent
		resolution = resolve_session(directory, "bbb")
		assert resolution.path == explicit
		assert resolution.method == "explicit"
		assert resolution.warning is None

	def test_missing_explicit_session_falls_back_with_warning(self, tmp_path: Path):
		project = tmp_path / "proj"
		path = write_parent_log(tmp_path / "home", project, "aaa", make_records(1))
		resolution = resolve_session(path.parent, "does-not-exist")
		assert resolution.path == path
		assert resolution.method == "fallback"
		assert "does-not-exist" in resolution.warning

	def test_ambiguity_warning(self, tmp_path: Path):
		"""Two logs modified within the window produce a warning; the newest wins."""
		project = tmp_path / "proj"
		home = tmp_path / "home"
		older = write_parent_log(home, project, "older", make_records(1))
		newer = write_parent_log(home, project, "newer", make_records(1))
		_age(older, 60)

		resolution = resolve_session(newer.parent)
		assert resolution.path == newer
		assert "2 active sessions" in resolution.warning

	def test_single_recent_log_has_no_warning(self, tmp_path: Path):
		project = tmp_path / "proj"
		home = tmp_path / "home"
		stale = write_parent_log(home, project, "stale", make_records(1))
		current = write_parent_log(home, project, "current", make_records(1))
		_age(stale, 3600)

		resolution = resolve_session(current.parent)
		assert resolution.path == current
		assert resolution.warning is None


class TestContextResolver:
	def test_no_history(self, tmp_path: Path):
		"""Missing history is a value, not an error."""
		resolver = ContextResolver(tmp_path / "home")
		context = resolver.build(tmp_path / "proj")
		assert context.is_empty
		assert context.render() == NO_HISTORY_TEXT

	def test_build_renders_filtered_turns(self, tmp_path: Path):
		project = tmp_path / "proj"
		home = tmp_path / "home"
		write_parent_log(home, project, "abc", make_records(5))

		context = ContextResolver(home).build(project, ContextOptions(session_id="abc", turns=2))
		assert context.method == "explicit"
		assert context.source.name == "abc.jsonl"
		assert "question 3" not in context.text
		assert "question 4" in context.text
		assert "answer 5" in context.text

	def test_build_truncates_to_budget(self, tmp_path: Path):
		project = tmp_path / "proj"
		home = tmp_path / "home"
		write_parent_log(home, project, "abc", make_records(50))

		context = ContextResolver(home).build(project, ContextOptions(turns=50, max_tokens=50))
		assert context.text.startswith(TRUNCATION_MARKER)
		assert "answer 50" in context.text
		assert "question 1\n" not in context.text

	def test_build_context_function(self, tmp_path: Path):
		project = tmp_path / "proj"
		home = tmp_path / "home"
		write_parent_log(home, project, "abc", make_records(1))

		context = build_context(project, ContextOptions(), claude_home=home)
		assert context.method == "fallback"
		assert "question 1" in context.render()
