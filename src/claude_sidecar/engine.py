"""
Engine Supervisor - Runs one OpenCode-compatible engine process per task.

The engine is a local HTTP server started with
`<engine_command> --hostname 127.0.0.1 --port <port>`. Everything else
(sessions, messages) goes through its HTTP control surface:

- GET  /config                   health probe
- POST /session                  create a remote session
- POST /session/{id}/message     send a prompt (blocks until the reply is done)
- GET  /session/{id}/message     list messages produced so far
"""

import asyncio
import json
import logging
import os
import socket
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import aiohttp

from .config import Config
from .errors import (
	EngineRequestError,
	EngineSessionCreateFailed,
	EngineUnreachable,
	InitialMessageFailed,
	PortExhausted,
)
from .logging_config import get_logger

logger = logging.getLogger(__name__)
output_logger = get_logger("engine.output")

DEFAULT_PROVIDER = "openrouter"
LOCALHOST = "127.0.0.1"

WRITE_TOOLS = {"write", "edit", "patch", "multiedit"}
READ_TOOLS = {"read"}

# Ports handed out in this process and not yet released
_reserved_ports: set[int] = set()
_ports_lock = threading.Lock()


def _port_free(port: int) -> bool:
	with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
		try:
			sock.bind((LOCALHOST, port))
		except OSError:
			return False
	return True


def allocate_port(base_port: int = 4440, max_attempts: int = 100) -> int:
	"""
	Reserve a free local port starting at base_port.

	Args:
		base_port: First port to try
		max_attempts: Number of consecutive ports to probe

	Returns:
		A port that is free on 127.0.0.1 and not reserved by another task

	Raises:
		PortExhausted: If no port in the range is usable
	"""
	with _ports_lock:
		for port in range(base_port, base_port + max_attempts):
			if port in _reserved_ports:
				continue
			if _port_free(port):
				_reserved_ports.add(port)
				logger.debug(f"Reserved port {port}")
				return port
	raise PortExhausted(f"No free port in range {base_port}-{base_port + max_attempts - 1}")


def release_port(port: Optional[int]) -> None:
	if port is None:
		return
	with _ports_lock:
		_reserved_ports.discard(port)


def parse_model_string(model: str) -> dict[str, str]:
	"""
	Split 'provider/model[/...]' on the first slash.

	A bare model name is routed through the default provider.
	"""
	provider, sep, model_id = model.partition("/")
	if not sep:
		return {"providerID": DEFAULT_PROVIDER, "modelID": model}
	return {"providerID": provider, "modelID": model_id}


def parse_mcp_spec(spec: str) -> tuple[str, dict]:
	"""
	Parse one MCP server given on the command line.

	Accepted forms:
		name=https://host/mcp     remote server
		name=command arg ...      local server
		{"name": {...}}           full engine config for one server

	Raises:
		ValueError: If the spec matches none of the forms
	"""
	spec = spec.strip()
	if spec.startswith("{"):
		try:
			parsed = json.loads(spec)
		except json.JSONDecodeError as e:
			raise ValueError(f"Invalid MCP JSON spec: {e}") from e
		if not isinstance(parsed, dict) or len(parsed) != 1:
			raise ValueError("MCP JSON spec must hold exactly one server")
		name, server = next(iter(parsed.items()))
		return name, server

	name, sep, value = spec.partition("=")
	if not sep or not name or not value:
		raise ValueError(f"MCP spec must be 'name=url' or 'name=command', got '{spec}'")
	if value.startswith(("http://", "https://")):
		return name, {"type": "remote", "url": value, "enabled": True}
	return name, {"type": "local", "command": value.split(), "enabled": True}


def load_mcp_config(path: str | Path) -> dict:
	"""
	Read the MCP servers from an opencode.json style file.

	The file may hold the servers under "mcp" or be the server mapping itself.

	Raises:
		ValueError: If the file is missing or not a JSON object
	"""
	path = Path(path).expanduser()
	try:
		data = json.loads(path.read_text())
	except FileNotFoundError as e:
		raise ValueError(f"MCP config file does not exist: {path}") from e
	except json.JSONDecodeError as e:
		raise ValueError(f"MCP config file is not valid JSON: {path}") from e
	if not isinstance(data, dict):
		raise ValueError(f"MCP config file must hold a JSON object: {path}")
	servers = data.get("mcp", data)
	return servers if isinstance(servers, dict) else {}


def build_mcp_config(
	specs: Optional[list[str]] = None,
	config_path: Optional[str | Path] = None,
) -> Optional[dict]:
	"""Merge servers from a config file with command-line specs. None when empty."""
	servers: dict = {}
	if config_path:
		servers.update(load_mcp_config(config_path))
	for spec in specs or []:
		name, server = parse_mcp_spec(spec)
		servers[name] = server
	return servers or None


def message_role(message: dict) -> Optional[str]:
	info = message.get("info")
	if isinstance(info, dict) and info.get("role"):
		return info["role"]
	return message.get("role")


def message_id(message: dict) -> Optional[str]:
	info = message.get("info")
	if isinstance(info, dict) and info.get("id"):
		return str(info["id"])
	return str(message["id"]) if message.get("id") else None


def message_parts(message: dict) -> list[dict]:
	parts = message.get("parts")
	if not isinstance(parts, list):
		return []
	return [p for p in parts if isinstance(p, dict)]


def message_text(message: dict) -> str:
	"""Concatenate the text parts of one engine message."""
	return "".join(
		p["text"] for p in message_parts(message)
		if p.get("type") == "text" and isinstance(p.get("text"), str)
	)


def assistant_texts(messages: list[dict]) -> list[str]:
	"""Non-empty text of each assistant message, oldest first."""
	texts = []
	for message in messages:
		if message_role(message) not in (None, "assistant"):
			continue
		text = message_text(message)
		if text:
			texts.append(text)
	return texts


def _relative(path: str, project: Path) -> str:
	candidate = Path(path)
	if not candidate.is_absolute():
		return candidate.as_posix()
	try:
		return candidate.resolve().relative_to(project).as_posix()
	except (ValueError, OSError):
		return path


def extract_file_activity(messages: list[dict], project: Path) -> tuple[set[str], set[str]]:
	"""
	Collect files read and written from tool parts.

	Returns:
		(files_read, files_written), project-relative where possible
	"""
	project = Path(project).resolve()
	read: set[str] = set()
	written: set[str] = set()
	for message in messages:
		for part in message_parts(message):
			if part.get("type") != "tool":
				continue
			tool = str(part.get("tool") or "").lower()
			state = part.get("state") if isinstance(part.get("state"), dict) else {}
			tool_input = state.get("input") if isinstance(state.get("input"), dict) else {}
			path = tool_input.get("filePath") or tool_input.get("file_path") or tool_input.get("path")
			if not path:
				continue
			if tool in READ_TOOLS:
				read.add(_relative(path, project))
			elif tool in WRITE_TOOLS:
				written.add(_relative(path, project))
	return read, written


class EngineClient:
	"""Thin aiohttp client for the engine's HTTP control surface."""

	def __init__(self, base_url: str, timeout: float = 30.0):
		self.base_url = base_url.rstrip("/")
		self.timeout = timeout
		self._session: Optional[aiohttp.ClientSession] = None

	def _http(self) -> aiohttp.ClientSession:
		if self._session is None or self._session.closed:
			self._session = aiohttp.ClientSession()
		return self._session

	async def _request(
		self,
		method: str,
		path: str,
		payload: Optional[dict] = None,
		timeout: Optional[float] = None,
	) -> Any:
		url = f"{self.base_url}{path}"
		client_timeout = aiohttp.ClientTimeout(total=timeout) if timeout else None
		try:
			async with self._http().request(method, url, json=payload, timeout=client_timeout) as response:
				body = await response.text()
				if response.status >= 400:
					raise EngineRequestError(f"{method} {path} returned {response.status}: {body[:200]}")
		except (aiohttp.ClientError, asyncio.TimeoutError) as e:
			raise EngineRequestError(f"{method} {path} failed: {e}") from e

		if not body:
			return None
		try:
			return json.loads(body)
		except json.JSONDecodeError as e:
			raise EngineRequestError(f"{method} {path} returned invalid JSON") from e

	async def get_config(self) -> Any:
		return await self._request("GET", "/config", timeout=self.timeout)

	async def health(self) -> bool:
		try:
			await self.get_config()
		except EngineRequestError:
			return False
		return True

	async def create_session(self) -> Any:
		return await self._request("POST", "/session", {}, timeout=self.timeout)

	async def post_message(self, session_id: str, payload: dict) -> Any:
		# Replies can take minutes; callers bound the wait themselves
		return await self._request("POST", f"/session/{session_id}/message", payload)

	async def get_messages(self, session_id: str) -> list[dict]:
		data = await self._request("GET", f"/session/{session_id}/message", timeout=self.timeout)
		return data if isinstance(data, list) else []

	async def close(self) -> None:
		if self._session is not None and not self._session.closed:
			await self._session.close()
		self._session = None


@dataclass
class EngineHandle:
	"""A running engine process and its remote session."""
	port: int
	process: Optional[asyncio.subprocess.Process] = None
	client: Optional[EngineClient] = None
	remote_session_id: Optional[str] = None
	pump_tasks: list[asyncio.Task] = field(default_factory=list)
	closed: bool = False

	@property
	def base_url(self) -> str:
		return f"http://{LOCALHOST}:{self.port}"


class EngineSupervisor:
	"""
	Owns the engine process for one task.

	Usage:
		supervisor = EngineSupervisor(config, project, model="openrouter/google/gemini-2.5-pro")
		try:
			await supervisor.spawn()
			await supervisor.wait_until_healthy()
			await supervisor.create_remote_session()
			reply = await supervisor.send_initial_message(system, briefing)
		finally:
			await supervisor.shutdown()
	"""

	def __init__(
		self,
		config: Config,
		project: str | Path,
		model: str,
		agent: Optional[str] = None,
		mcp_config: Optional[dict] = None,
	):
		self.config = config
		self.project = Path(project)
		self.model = model
		self.agent = agent
		self.mcp_config = mcp_config
		self.handle: Optional[EngineHandle] = None

	@property
	def session_id(self) -> Optional[str]:
		return self.handle.remote_session_id if self.handle else None

	def _require_client(self) -> EngineClient:
		if self.handle is None or self.handle.client is None:
			raise EngineRequestError("Engine not started")
		return self.handle.client

	async def spawn(self) -> EngineHandle:
		"""
		Start the engine process on a freshly reserved port.

		Raises:
			PortExhausted: If no port is available
			EngineUnreachable: If the engine command cannot be executed
		"""
		port = allocate_port(self.config.base_port, self.config.port_attempts)
		self.handle = EngineHandle(
			port=port,
			client=EngineClient(f"http://{LOCALHOST}:{port}", self.config.http_timeout),
		)

		env = os.environ.copy()
		if self.mcp_config:
			env["OPENCODE_CONFIG_CONTENT"] = json.dumps({"mcp": self.mcp_config})
			logger.info(f"Passing MCP servers to engine: {', '.join(sorted(self.mcp_config))}")

		cmd = [*self.config.engine_command, "--hostname", LOCALHOST, "--port", str(port)]
		logger.info(f"Starting engine on port {port}: {' '.join(cmd)}")
		try:
			process = await asyncio.create_subprocess_exec(
				*cmd,
				cwd=str(self.project),
				env=env,
				stdin=asyncio.subprocess.DEVNULL,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.PIPE,
			)
		except OSError as e:
			release_port(port)
			self.handle.closed = True
			raise EngineUnreachable(f"Cannot start engine '{cmd[0]}': {e}") from e

		self.handle.process = process
		self.handle.pump_tasks = [
			asyncio.create_task(self._pump(process.stdout, "stdout")),
			asyncio.create_task(self._pump(process.stderr, "stderr")),
		]
		return self.handle

	async def _pump(self, stream: Optional[asyncio.StreamReader], name: str) -> None:
		if stream is None:
			return
		while True:
			line = await stream.readline()
			if not line:
				return
			output_logger.debug(f"[{name}] {line.decode(errors='replace').rstrip()}")

	async def wait_until_healthy(self) -> None:
		"""
		Poll the health endpoint until the engine answers.

		Raises:
			EngineUnreachable: If the process exits early or retries run out
		"""
		client = self._require_client()
		process = self.handle.process
		for attempt in range(1, self.config.health_retries + 1):
			if process is not None and process.returncode is not None:
				await self.shutdown()
				raise EngineUnreachable(f"Engine exited with code {process.returncode} before becoming healthy")
			if await client.health():
				logger.info(f"Engine healthy on port {self.handle.port} after {attempt} check(s)")
				return
			await asyncio.sleep(self.config.health_interval)

		await self.shutdown()
		raise EngineUnreachable(
			f"Engine did not respond after {self.config.health_retries} health checks"
		)

	async def create_remote_session(self) -> str:
		"""
		Create the engine-side session.

		Raises:
			EngineSessionCreateFailed: On request failure or a response without an id
		"""
		client = self._require_client()
		try:
			data = await client.create_session()
		except EngineRequestError as e:
			raise EngineSessionCreateFailed(str(e)) from e

		session_id = None
		if isinstance(data, dict):
			session_id = data.get("id")
			if not session_id and isinstance(data.get("session"), dict):
				session_id = data["session"].get("id")
		if not isinstance(session_id, str) or not session_id:
			raise EngineSessionCreateFailed(f"Engine returned no session id: {str(data)[:200]}")

		self.handle.remote_session_id = session_id
		logger.info(f"Engine session {session_id} created")
		return session_id

	def _payload(self, text: str, system: Optional[str] = None) -> dict:
		payload: dict[str, Any] = {
			"model": parse_model_string(self.model),
			"parts": [{"type": "text", "text": text}],
		}
		if system:
			payload["system"] = system
		if self.agent:
			payload["agent"] = self.agent
		return payload

	async def send_initial_message(self, system: str, text: str) -> Any:
		"""
		Send the first prompt, retrying with exponential backoff.

		Raises:
			InitialMessageFailed: If every attempt fails
		"""
		client = self._require_client()
		attempts = max(1, self.config.initial_message_attempts)
		last_error: Optional[Exception] = None
		for attempt in range(attempts):
			try:
				return await client.post_message(self.session_id, self._payload(text, system))
			except EngineRequestError as e:
				last_error = e
				if attempt < attempts - 1:
					delay = self.config.initial_backoff * (2 ** attempt)
					logger.warning(f"Initial message attempt {attempt + 1} failed: {e}; retrying in {delay:.1f}s")
					await asyncio.sleep(delay)
		raise InitialMessageFailed(f"Initial message failed after {attempts} attempts: {last_error}")

	async def send_message(self, text: str, system: Optional[str] = None) -> Any:
		"""
		Send a follow-up message once.

		Raises:
			EngineRequestError: On any failure
		"""
		client = self._require_client()
		return await client.post_message(self.session_id, self._payload(text, system))

	async def get_messages(self) -> list[dict]:
		client = self._require_client()
		if not self.session_id:
			return []
		return await client.get_messages(self.session_id)

	async def shutdown(self) -> None:
		"""Close the client, stop the process, release the port. Safe to call twice."""
		handle = self.handle
		if handle is None or handle.closed:
			return
		handle.closed = True

		if handle.client is not None:
			await handle.client.close()

		process = handle.process
		if process is not None and process.returncode is None:
			try:
				process.terminate()
				await asyncio.wait_for(process.wait(), timeout=5)
			except asyncio.TimeoutError:
				logger.warning(f"Engine on port {handle.port} did not exit; killing")
				process.kill()
				await process.wait()
			except ProcessLookupError:
				pass

		for task in handle.pump_tasks:
			task.cancel()
		release_port(handle.port)
		logger.info(f"Engine on port {handle.port} shut down")
