"""Configuration system using platformdirs for cross-platform paths."""

import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path

import platformdirs

APP_NAME = "claude-sidecar"
APP_AUTHOR = "claude-sidecar"

SESSIONS_DIRNAME = ".claude/sidecar_sessions"


@dataclass
class Config:
	"""Central configuration with XDG/platform conventions."""

	config_dir: Path = field(default_factory=lambda: Path(platformdirs.user_config_dir(APP_NAME)))
	data_dir: Path = field(default_factory=lambda: Path(platformdirs.user_data_dir(APP_NAME)))

	# Derived paths
	log_dir: Path = field(init=False)

	# Where the parent Claude Code conversation logs live
	claude_home: Path = field(default_factory=lambda: Path.home() / ".claude")

	# Engine process
	engine_command: list[str] = field(default_factory=lambda: ["opencode", "serve"])
	base_port: int = 4440
	port_attempts: int = 100
	health_interval: float = 0.5
	health_retries: int = 30
	http_timeout: float = 30.0
	initial_message_attempts: int = 3
	initial_backoff: float = 1.0

	# Completion loop
	poll_interval: float = 2.0
	grace_period: float = 30.0
	heartbeat_interval: float = 5.0
	default_timeout_minutes: float = 15.0

	# Context building
	context_turns: int = 50
	context_max_tokens: int = 80000

	# Advisory thresholds
	ambiguity_window_minutes: float = 5.0
	drift_age_minutes: float = 10.0
	drift_turns: int = 5

	def __post_init__(self) -> None:
		self.log_dir = self.data_dir / "logs"

	def ensure_dirs(self) -> None:
		"""Create all required directories."""
		self.config_dir.mkdir(parents=True, exist_ok=True)
		self.data_dir.mkdir(parents=True, exist_ok=True)
		self.log_dir.mkdir(parents=True, exist_ok=True)


PATH_FIELDS = {"config_dir", "data_dir", "claude_home"}


def _coerce(config: Config, key: str, val):
	"""Convert a raw toml/env value to the type of the existing attribute."""
	if key in PATH_FIELDS:
		return Path(os.path.expanduser(str(val)))
	current = getattr(config, key)
	if isinstance(current, list):
		if isinstance(val, str):
			return val.split()
		return list(val)
	if isinstance(current, bool):
		return str(val).lower() in ("1", "true", "yes")
	if isinstance(current, int):
		return int(val)
	if isinstance(current, float):
		return float(val)
	return val


def _apply_env_overrides(config: Config) -> Config:
	"""Apply CLAUDE_SIDECAR_* environment variable overrides."""
	for f in fields(config):
		if not f.init:
			continue
		val = os.getenv(f"CLAUDE_SIDECAR_{f.name.upper()}")
		if val:
			setattr(config, f.name, _coerce(config, f.name, val))
	# Recompute derived paths after overrides
	config.__post_init__()
	return config


def _apply_toml(config: Config) -> Config:
	"""Apply config.toml overrides if file exists."""
	toml_path = config.config_dir / "config.toml"
	if not toml_path.exists():
		return config

	with open(toml_path, "rb") as f:
		data = tomllib.load(f)

	for key, val in data.items():
		if hasattr(config, key) and key != "log_dir":
			setattr(config, key, _coerce(config, key, val))

	# Recompute derived paths after toml overrides
	config.__post_init__()
	return config


def load_config() -> Config:
	"""Load config with precedence: env vars > config.toml > defaults."""
	config = Config()
	# First pass so CLAUDE_SIDECAR_CONFIG_DIR selects which config.toml is read
	config = _apply_env_overrides(config)
	config = _apply_toml(config)
	config = _apply_env_overrides(config)
	config.ensure_dirs()
	return config


# Singleton
_config: Config | None = None


def get_config() -> Config:
	"""Get or create the global config instance."""
	global _config
	if _config is None:
		_config = load_config()
	return _config
