"""Tests for the engine supervisor, against the fake engine in a real subprocess."""

import json
import socket
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from claude_sidecar.engine import (
	EngineSupervisor,
	_reserved_ports,
	allocate_port,
	assistant_texts,
	build_mcp_config,
	extract_file_activity,
	load_mcp_config,
	parse_mcp_spec,
	parse_model_string,
	release_port,
)
from claude_sidecar.errors import (
	EngineRequestError,
	EngineSessionCreateFailed,
	EngineUnreachable,
	InitialMessageFailed,
	PortExhausted,
)

from .helpers import make_config


class TestPorts:
	def test_concurrent_allocations_are_distinct(self):
		"""Tasks starting from the same base port never share a port."""
		with ThreadPoolExecutor(max_workers=8) as pool:
			ports = list(pool.map(lambda _: allocate_port(46100, 50), range(8)))
		try:
			assert len(set(ports)) == 8
		finally:
			for port in ports:
				release_port(port)
		assert not _reserved_ports.intersection(ports)

	def test_skips_bound_port(self):
		with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
			sock.bind(("127.0.0.1", 0))
			taken = sock.getsockname()[1]
			port = allocate_port(taken, 5)
			try:
				assert port != taken
			finally:
				release_port(port)

	def test_exhausted(self):
		port = allocate_port(46300, 1)
		try:
			with pytest.raises(PortExhausted):
				allocate_port(46300, 1)
		finally:
			release_port(port)


class TestMessageParsing:
	def test_parse_model_string(self):
		assert parse_model_string("openrouter/google/gemini-2.5-pro") == {
			"providerID": "openrouter",
			"modelID": "google/gemini-2.5-pro",
		}
		assert parse_model_string("anthropic/claude-sonnet") == {"providerID": "anthropic", "modelID": "claude-sonnet"}
		assert parse_model_string("gpt-4o") == {"providerID": "openrouter", "modelID": "gpt-4o"}

	def test_assistant_texts(self):
		messages = [
			{"info": {"role": "user"}, "parts": [{"type": "text", "text": "question"}]},
			{"info": {"role": "assistant"}, "parts": [
				{"type": "text", "text": "part one, "},
				{"type": "reasoning", "text": "hidden"},
				{"type": "text", "text": "part two"},
			]},
			{"info": {"role": "assistant"}, "parts": [{"type": "tool", "tool": "read"}]},
		]
		assert assistant_texts(messages) == ["part one, part two"]

	def test_extract_file_activity(self, tmp_path: Path):
		messages = [{"info": {"role": "assistant"}, "parts": [
			{"type": "tool", "tool": "read", "state": {"input": {"filePath": str(tmp_path / "src" / "a.py")}}},
			{"type": "tool", "tool": "edit", "state": {"input": {"filePath": "src/b.py"}}},
			{"type": "tool", "tool": "bash", "state": {"input": {"command": "ls"}}},
		]}]
		read, written = extract_file_activity(messages, tmp_path)
		assert read == {"src/a.py"}
		assert written == {"src/b.py"}


class TestMcpConfig:
	def test_remote_and_local_specs(self):
		assert parse_mcp_spec("docs=https://example.com/mcp") == (
			"docs",
			{"type": "remote", "url": "https://example.com/mcp", "enabled": True},
		)
		assert parse_mcp_spec("fs=npx server-fs --root /tmp") == (
			"fs",
			{"type": "local", "command": ["npx", "server-fs", "--root", "/tmp"], "enabled": True},
		)

	def test_json_spec(self):
		assert parse_mcp_spec('{"db": {"type": "local", "command": ["db-mcp"]}}') == (
			"db",
			{"type": "local", "command": ["db-mcp"]},
		)

	@pytest.mark.parametrize("spec", ["no-equals", "=value", "name=", "{not json", '{"a": {}, "b": {}}'])
	def test_invalid_specs(self, spec):
		with pytest.raises(ValueError):
			parse_mcp_spec(spec)

	def test_file_and_specs_merge(self, tmp_path: Path):
		path = tmp_path / "opencode.json"
		path.write_text(json.dumps({"mcp": {"docs": {"type": "remote", "url": "http://old"}}}))

		servers = build_mcp_config(["docs=https://new.example/mcp"], path)
		assert servers == {"docs": {"type": "remote", "url": "https://new.example/mcp", "enabled": True}}
		assert build_mcp_config() is None

	def test_bad_file(self, tmp_path: Path):
		with pytest.raises(ValueError, match="does not exist"):
			load_mcp_config(tmp_path / "missing.json")
		bad = tmp_path / "bad.json"
		bad.write_text("{")
		with pytest.raises(ValueError, match="not valid JSON"):
			load_mcp_config(bad)


class TestSupervisor:
	@pytest.mark.asyncio
	async def test_mcp_config_reaches_engine(self, tmp_path: Path, monkeypatch):
		monkeypatch.setenv("FAKE_ENGINE_MODE", "complete")
		servers = {"docs": {"type": "remote", "url": "https://example.com/mcp", "enabled": True}}
		supervisor = EngineSupervisor(make_config(tmp_path), tmp_path, "m", mcp_config=servers)
		try:
			await supervisor.spawn()
			await supervisor.wait_until_healthy()
			reported = await supervisor.handle.client.get_config()
		finally:
			await supervisor.shutdown()

		assert json.loads(reported["configContent"]) == {"mcp": servers}

	@pytest.mark.asyncio
	async def test_no_mcp_config_by_default(self, tmp_path: Path, monkeypatch):
		monkeypatch.setenv("FAKE_ENGINE_MODE", "complete")
		monkeypatch.delenv("OPENCODE_CONFIG_CONTENT", raising=False)
		supervisor = EngineSupervisor(make_config(tmp_path), tmp_path, "m")
		try:
			await supervisor.spawn()
			await supervisor.wait_until_healthy()
			reported = await supervisor.handle.client.get_config()
		finally:
			await supervisor.shutdown()

		assert reported["configContent"] is None

	@pytest.mark.asyncio
	async def test_full_exchange(self, tmp_path: Path, monkeypatch):
		monkeypatch.setenv("FAKE_ENGINE_MODE", "complete")
		supervisor = EngineSupervisor(make_config(tmp_path), tmp_path, "openrouter/test/model")
		try:
			await supervisor.spawn()
			await supervisor.wait_until_healthy()
			session_id = await supervisor.create_remote_session()
			assert session_id == "ses_1"

			reply = await supervisor.send_initial_message("system prompt", "the briefing")
			assert "Handled: the briefing" in assistant_texts([reply])[0]

			messages = await supervisor.get_messages()
			assert len(messages) == 2
		finally:
			await supervisor.shutdown()

		port = supervisor.handle.port
		assert port not in _reserved_ports
		assert supervisor.handle.process.returncode is not None
		# Idempotent
		await supervisor.shutdown()

	@pytest.mark.asyncio
	async def test_early_exit_is_unreachable(self, tmp_path: Path, monkeypatch):
		monkeypatch.setenv("FAKE_ENGINE_MODE", "exit")
		supervisor = EngineSupervisor(make_config(tmp_path), tmp_path, "m")
		try:
			await supervisor.spawn()
			with pytest.raises(EngineUnreachable):
				await supervisor.wait_until_healthy()
		finally:
			await supervisor.shutdown()

	@pytest.mark.asyncio
	async def test_missing_command_is_unreachable(self, tmp_path: Path):
		config = make_config(tmp_path, engine_command=["definitely-not-an-engine-binary"])
		supervisor = EngineSupervisor(config, tmp_path, "m")
		with pytest.raises(EngineUnreachable):
			await supervisor.spawn()
		await supervisor.shutdown()
		assert supervisor.handle.port not in _reserved_ports

	@pytest.mark.asyncio
	async def test_session_without_id(self, tmp_path: Path, monkeypatch):
		monkeypatch.setenv("FAKE_ENGINE_MODE", "no_session")
		supervisor = EngineSupervisor(make_config(tmp_path), tmp_path, "m")
		try:
			await supervisor.spawn()
			await supervisor.wait_until_healthy()
			with pytest.raises(EngineSessionCreateFailed):
				await supervisor.create_remote_session()
		finally:
			await supervisor.shutdown()

	@pytest.mark.asyncio
	async def test_initial_message_retries_then_fails(self, tmp_path: Path, monkeypatch):
		monkeypatch.setenv("FAKE_ENGINE_MODE", "fail_message")
		supervisor = EngineSupervisor(make_config(tmp_path), tmp_path, "m")
		try:
			await supervisor.spawn()
			await supervisor.wait_until_healthy()
			await supervisor.create_remote_session()
			with pytest.raises(InitialMessageFailed):
				await supervisor.send_initial_message("sys", "hello")
			with pytest.raises(EngineRequestError):
				await supervisor.send_message("again")
		finally:
			await supervisor.shutdown()
