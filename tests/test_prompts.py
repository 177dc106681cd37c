"""Tests for prompt composition."""

from claude_sidecar.models import SessionMode, SummaryLength
from claude_sidecar.prompts import (
	COMPLETE_MARKER,
	Prompts,
	build_continuation_context,
	build_forced_fold_request,
	build_prompts,
	build_resume_prompt,
)


class TestSystemPrompt:
	def test_headless_prompt_sections(self):
		prompts = build_prompts("Fix the bug", "[User @ 10:00 AM] help", "/proj", SessionMode.HEADLESS)
		system = prompts.system
		assert system.startswith("# SIDECAR SESSION")
		assert '<previous_conversation purpose="background_reference_only">' in system
		assert "[User @ 10:00 AM] help" in system
		assert "Project: /proj" in system
		assert "HEADLESS MODE INSTRUCTIONS" in system
		assert system.rstrip().endswith(COMPLETE_MARKER)
		assert prompts.user_message == "Fix the bug"

	def test_interactive_prompt_has_no_marker_instructions(self):
		system = build_prompts("Look", "", "/proj", SessionMode.INTERACTIVE).system
		assert "INTERACTIVE MODE" in system
		assert COMPLETE_MARKER not in system
		assert "<previous_conversation" not in system

	def test_summary_lengths(self):
		brief = build_prompts("x", "", "/p", SessionMode.HEADLESS, SummaryLength.BRIEF).system
		verbose = build_prompts("x", "", "/p", SessionMode.HEADLESS, SummaryLength.VERBOSE).system
		assert "BRIEF summary" in brief
		assert "**Attempted Approaches:**" not in brief
		assert "(VERBOSE)" in verbose
		assert "BRIEF" in build_forced_fold_request(SummaryLength.BRIEF)
		assert COMPLETE_MARKER in build_forced_fold_request()


class TestInitialContext:
	def test_markdown_round_trip(self):
		prompts = Prompts(system="sys line\n\nmore", user_message="do the thing")
		text = prompts.to_markdown()
		assert text.startswith("# System Prompt\n\nsys line")
		assert "# User Message (Task)\n\ndo the thing" in text
		assert Prompts.from_markdown(text) == prompts

	def test_from_markdown_without_user_heading(self):
		parsed = Prompts.from_markdown("just a system prompt", fallback_message="briefing")
		assert parsed.system == "just a system prompt"
		assert parsed.user_message == "briefing"


class TestContinuation:
	def test_continuation_context_order(self):
		text = build_continuation_context(
			previous_task_id="old12345",
			previous_briefing="Old task",
			previous_summary="## Sidecar Results: Old",
			previous_dialogue="[user @ 10:00:00] earlier",
			parent_context="[User @ 10:00 AM] parent",
			briefing="New task",
			max_chars=1000,
		)
		positions = [
			text.index("## NEW TASK"),
			text.index("### Previous Conversation"),
			text.index("### Previous Summary"),
			text.index("## CURRENT PARENT CONVERSATION"),
		]
		assert positions == sorted(positions)
		assert "old12345" in text

	def test_continuation_truncates_dialogue_from_start(self):
		text = build_continuation_context("t", "", "", "a" * 50 + "z" * 10, "", "b", max_chars=10)
		assert "z" * 10 in text
		assert "a" not in text.split("### Previous Conversation")[1].split("###")[0]

	def test_resume_prompt_includes_notice_and_dialogue(self):
		prompt = build_resume_prompt("original system", "[user @ 1] hi", "## RESUME NOTICE")
		assert prompt.startswith("original system")
		assert prompt.index("## RESUME NOTICE") < prompt.index("[user @ 1] hi")
