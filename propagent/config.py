"""
Configuration management for propagent.

Loads config.yaml, located (first match wins) by:
1. An explicit path (the CLI's --config)
2. $PROPAGENT_CONFIG
3. $PROPAGENT_HOME/config.yaml (PROPAGENT_HOME defaults to ~/.propagent)

An explicit path or $PROPAGENT_CONFIG that does not exist is an error; a
missing default file means "all defaults".

Example:

    storage:
      ledger: file              # memory | file
      ledger_dir: ~/.propagent/ledger
      memory: sqlite            # memory | sqlite
      memory_path: ~/.propagent/memory.db
      policies_file: ~/.propagent/policies.yaml
    logging:
      level: INFO
      format: structured        # structured | pretty
      output: ~/.propagent/logs/propagent-{date}.log
      console: true
    agent:
      timezone: America/New_York
      reasoning_timeout_seconds: 30
    governor:
      failure_threshold_pct: 40
      critical_open_threshold: 5
      window_hours: 6
"""

import os
from datetime import datetime, tzinfo
from pathlib import Path
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from propagent.clients.reasoning import ComputeClient, LLMReasoningClient, NoOpReasoningClient, ReasoningClient
from propagent.errors import PropagentError
from propagent.governor import GovernorState
from propagent.ledger import FileRunLedger, InMemoryRunLedger, RunLedger
from propagent.memory import InMemoryMemoryStore, MemoryStore, SQLiteMemoryStore
from propagent.policy.store import InMemoryPolicyStore, PolicyStore, YamlPolicyStore

LEDGER_BACKENDS = ("memory", "file")
MEMORY_BACKENDS = ("memory", "sqlite")


class ConfigError(PropagentError):
    """Configuration validation error."""
    pass


def get_propagent_home() -> Path:
    """Get PROPAGENT_HOME directory."""
    return Path(os.environ.get("PROPAGENT_HOME", Path.home() / ".propagent")).expanduser()


def resolve_config_path(config_path: Optional[Path] = None) -> tuple[Path, bool]:
    """
    Locate the configuration file.

    Returns:
        (path, required) where required means a missing file is an error
    """
    if config_path is not None:
        return Path(config_path).expanduser(), True
    env_path = os.environ.get("PROPAGENT_CONFIG")
    if env_path:
        return Path(env_path).expanduser(), True
    return get_propagent_home() / "config.yaml", False


class PropagentConfig:
    """Complete propagent configuration."""

    def __init__(self, config_path: Path, raw_config: Optional[Dict[str, Any]] = None):
        self.config_path = config_path
        self.home = get_propagent_home()
        self.raw_config = raw_config if raw_config is not None else self._load_yaml()

        self.storage = self._section("storage")
        self.logging = self._section("logging")
        self.agent = self._section("agent")
        self.governor = self._section("governor")

    def _load_yaml(self) -> Dict[str, Any]:
        """Load and parse the YAML configuration file."""
        if not self.config_path.exists():
            raise ConfigError(f"Configuration file not found: {self.config_path}")
        try:
            with open(self.config_path, "r") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML syntax: {e}")
        if config is None:
            return {}
        if not isinstance(config, dict):
            raise ConfigError(f"Configuration must be a mapping: {self.config_path}")
        return config

    def _section(self, name: str) -> Dict[str, Any]:
        section = self.raw_config.get(name) or {}
        if not isinstance(section, dict):
            raise ConfigError(f"Section '{name}' must be a mapping")
        return section

    def _path(self, value: Optional[str], default: Path) -> Path:
        return Path(value).expanduser() if value else default

    # -- storage --------------------------------------------------------------

    def get_ledger_backend(self) -> str:
        return self.storage.get("ledger", "file")

    def get_ledger_dir(self) -> Path:
        return self._path(self.storage.get("ledger_dir"), self.home / "ledger")

    def get_memory_backend(self) -> str:
        return self.storage.get("memory", "sqlite")

    def get_memory_path(self) -> Path:
        return self._path(self.storage.get("memory_path"), self.home / "memory.db")

    def get_policies_file(self) -> Optional[Path]:
        """Policy YAML file; None means built-in defaults only."""
        value = self.storage.get("policies_file")
        if value is None:
            default = self.home / "policies.yaml"
            return default if default.exists() else None
        return Path(value).expanduser()

    # -- logging --------------------------------------------------------------

    def get_log_file_path(self) -> Optional[Path]:
        """Log file path with {date} interpolation; None disables file logging."""
        log_output = self.logging.get("output")
        if not log_output:
            return None
        log_output = str(log_output).replace("{date}", datetime.now().strftime("%Y-%m-%d"))
        return Path(log_output).expanduser()

    def get_log_level(self) -> str:
        return str(self.logging.get("level", "INFO")).upper()

    def get_log_format(self) -> str:
        """Get log format (structured or pretty)."""
        return self.logging.get("format", "pretty")

    def should_log_to_console(self) -> bool:
        return bool(self.logging.get("console", True))

    # -- agent ----------------------------------------------------------------

    def get_timezone(self) -> tzinfo:
        """Timezone quiet hours are evaluated in."""
        name = self.agent.get("timezone", "UTC")
        try:
            return ZoneInfo(str(name))
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigError(f"Invalid timezone: {name}")

    def get_reasoning_timeout(self) -> float:
        return float(self.agent.get("reasoning_timeout_seconds", 30))

    # -- governor -------------------------------------------------------------

    def get_governor_defaults(self) -> GovernorState:
        base = GovernorState()
        return GovernorState(
            failure_threshold_pct=int(self.governor.get("failure_threshold_pct", base.failure_threshold_pct)),
            critical_open_threshold=int(self.governor.get("critical_open_threshold", base.critical_open_threshold)),
            window_hours=int(self.governor.get("window_hours", base.window_hours)),
        )

    def validate(self) -> None:
        """Validate backends, timezone and the log level."""
        if self.get_ledger_backend() not in LEDGER_BACKENDS:
            raise ConfigError(
                f"Unknown ledger backend: {self.get_ledger_backend()} (expected one of {', '.join(LEDGER_BACKENDS)})"
            )
        if self.get_memory_backend() not in MEMORY_BACKENDS:
            raise ConfigError(
                f"Unknown memory backend: {self.get_memory_backend()} (expected one of {', '.join(MEMORY_BACKENDS)})"
            )
        if self.get_log_level() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigError(f"Invalid log level: {self.get_log_level()}")
        self.get_timezone()

    def __repr__(self) -> str:
        return (
            f"PropagentConfig(path={self.config_path}, ledger={self.get_ledger_backend()}, "
            f"memory={self.get_memory_backend()})"
        )


def load_config(config_path: Optional[Path] = None) -> PropagentConfig:
    """
    Load and validate propagent configuration.

    Args:
        config_path: Explicit config file; see module docstring for the fallbacks

    Raises:
        ConfigError: If the file is missing (when required) or invalid
    """
    path, required = resolve_config_path(config_path)
    if not required and not path.exists():
        config = PropagentConfig(path, raw_config={})
    else:
        config = PropagentConfig(path)
    config.validate()
    return config


# =============================================================================
# FACTORIES
# =============================================================================

def create_ledger(config: PropagentConfig) -> RunLedger:
    if config.get_ledger_backend() == "memory":
        return InMemoryRunLedger()
    return FileRunLedger(config.get_ledger_dir())


def create_memory_store(config: PropagentConfig) -> MemoryStore:
    if config.get_memory_backend() == "memory":
        return InMemoryMemoryStore()
    return SQLiteMemoryStore(config.get_memory_path())


def create_policy_store(config: PropagentConfig) -> PolicyStore:
    path = config.get_policies_file()
    if path is None:
        return InMemoryPolicyStore()
    return YamlPolicyStore(path)


def create_reasoning_client(
    config: PropagentConfig,
    compute: Optional[ComputeClient] = None,
    model: Optional[str] = None,
) -> ReasoningClient:
    """Reasoning client over ``compute``; without one, every call reports the service unavailable."""
    if compute is None:
        return NoOpReasoningClient()
    return LLMReasoningClient(compute, model=model, timeout_seconds=config.get_reasoning_timeout())
