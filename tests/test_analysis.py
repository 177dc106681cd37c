"""Tests for conflict and drift analysis."""

import os
from datetime import timedelta
from pathlib import Path

import pytest

from claude_sidecar.analysis import (
	build_resume_notice,
	calculate_drift,
	check_file_drift,
	count_turns_since,
	detect_conflicts,
	format_conflict_warning,
	format_drift_warning,
	format_relative_time,
	is_drift_significant,
)
from claude_sidecar.errors import ConflictDetectionFailed
from claude_sidecar.models import Conflict, ContextDrift, utc_now

from .helpers import make_records, write_parent_log


def _set_mtime(path: Path, when) -> None:
	stamp = when.timestamp()
	os.utime(path, (stamp, stamp))


class TestDriftSignificance:
	@pytest.mark.parametrize("age, turns, expected", [
		(11, 0, True),
		(10, 5, False),
		(0, 6, True),
		(0, 0, False),
	])
	def test_thresholds(self, age, turns, expected):
		assert is_drift_significant(age, turns) is expected

	def test_custom_thresholds(self):
		assert is_drift_significant(3, 0, max_age_minutes=2) is True


class TestTurnCounting:
	def test_counts_user_records_since(self, tmp_path: Path):
		now = utc_now()
		records = make_records(5, start=now - timedelta(minutes=50), step=timedelta(minutes=5))
		log = write_parent_log(tmp_path / "home", tmp_path / "proj", "abc", records)
		# User records at -50, -40, -30, -20, -10 minutes
		assert count_turns_since(log, now - timedelta(minutes=25)) == 2
		assert count_turns_since(log, now - timedelta(minutes=60)) == 5

	def test_missing_log_counts_zero(self, tmp_path: Path):
		assert count_turns_since(None, utc_now()) == 0
		assert count_turns_since(tmp_path / "nope.jsonl", utc_now()) == 0

	def test_calculate_drift(self, tmp_path: Path):
		now = utc_now()
		started = now - timedelta(minutes=30)
		records = make_records(8, start=started + timedelta(minutes=1), step=timedelta(minutes=1))
		log = write_parent_log(tmp_path / "home", tmp_path / "proj", "abc", records)

		drift = calculate_drift(started, log, now)
		assert drift.age_minutes == 30
		assert drift.main_turns == 8
		assert drift.is_significant is True


class TestConflicts:
	def test_modified_after_start_is_flagged(self, tmp_path: Path):
		started = utc_now() - timedelta(minutes=10)
		(tmp_path / "changed.py").write_text("x")
		(tmp_path / "untouched.py").write_text("y")
		_set_mtime(tmp_path / "untouched.py", started - timedelta(minutes=5))

		conflicts = detect_conflicts({"changed.py", "untouched.py"}, tmp_path, started)
		assert [c.file for c in conflicts] == ["changed.py"]
		assert conflicts[0].action == "modified"
		assert conflicts[0].external_mtime > started

	def test_deleted_file_is_flagged(self, tmp_path: Path):
		conflicts = detect_conflicts({"gone.py"}, tmp_path, utc_now())
		assert conflicts == [Conflict(file="gone.py", action="deleted")]

	def test_missing_project_raises(self, tmp_path: Path):
		with pytest.raises(ConflictDetectionFailed):
			detect_conflicts({"a.py"}, tmp_path / "missing", utc_now())

	def test_file_drift_for_resume(self, tmp_path: Path):
		last_activity = utc_now() - timedelta(hours=1)
		(tmp_path / "fresh.py").write_text("new")
		(tmp_path / "old.py").write_text("old")
		_set_mtime(tmp_path / "old.py", last_activity - timedelta(hours=1))

		assert check_file_drift({"fresh.py", "old.py", "missing.py"}, tmp_path, last_activity) == ["fresh.py"]


class TestFormatting:
	def test_relative_time(self):
		now = utc_now()
		assert format_relative_time(now, now) == "just now"
		assert format_relative_time(now - timedelta(minutes=5), now) == "5 min ago"
		assert format_relative_time(now - timedelta(hours=2), now) == "2 hours ago"
		assert format_relative_time(now - timedelta(days=1), now) == "1 day ago"

	def test_conflict_warning(self):
		assert format_conflict_warning([]) == ""
		warning = format_conflict_warning([
			Conflict(file="a.py", action="modified", external_mtime=utc_now()),
			Conflict(file="b.py", action="deleted"),
		])
		assert "FILE CONFLICT WARNING" in warning
		assert "- a.py (external change: just now)" in warning
		assert "- b.py (deleted)" in warning

	def test_drift_warning(self):
		assert format_drift_warning(None) == ""
		quiet = format_drift_warning(ContextDrift(age_minutes=2, main_turns=1, is_significant=False))
		assert quiet == "Context Age: 2 minutes (1 conversation turns in main session)"
		loud = format_drift_warning(ContextDrift(age_minutes=20, main_turns=1, is_significant=True))
		assert "Drift Warning" in loud

	def test_resume_notice(self):
		now = utc_now()
		notice = build_resume_notice(["src/a.py"], now - timedelta(hours=3), now)
		assert "## RESUME NOTICE" in notice
		assert "3 hours" in notice
		assert "- src/a.py" in notice
