from datetime import datetime
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import yaml

from propagent.config import (
    ConfigError,
    PropagentConfig,
    create_ledger,
    create_memory_store,
    create_policy_store,
    create_reasoning_client,
    get_propagent_home,
    load_config,
)
from propagent.clients.reasoning import LLMReasoningClient, NoOpReasoningClient
from propagent.ledger import FileRunLedger, InMemoryRunLedger
from propagent.memory import InMemoryMemoryStore, SQLiteMemoryStore
from propagent.policy.store import InMemoryPolicyStore, YamlPolicyStore


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    monkeypatch.setenv("PROPAGENT_HOME", str(tmp_path))
    monkeypatch.delenv("PROPAGENT_CONFIG", raising=False)


def _write(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data))
    return path


def test_get_propagent_home_default(monkeypatch):
    monkeypatch.delenv("PROPAGENT_HOME", raising=False)
    assert get_propagent_home() == Path("~/.propagent").expanduser()


def test_get_propagent_home_env_var(tmp_path):
    assert get_propagent_home() == tmp_path


def test_missing_default_file_means_defaults(tmp_path):
    cfg = load_config()
    assert isinstance(cfg, PropagentConfig)
    assert cfg.get_ledger_backend() == "file"
    assert cfg.get_ledger_dir() == tmp_path / "ledger"
    assert cfg.get_memory_path() == tmp_path / "memory.db"
    assert cfg.get_policies_file() is None
    assert cfg.get_log_file_path() is None
    assert cfg.get_timezone().key == "UTC"


def test_missing_explicit_file_is_an_error(tmp_path):
    with pytest.raises(ConfigError, match="Configuration file not found"):
        load_config(tmp_path / "nope.yaml")


def test_missing_env_file_is_an_error(monkeypatch, tmp_path):
    monkeypatch.setenv("PROPAGENT_CONFIG", str(tmp_path / "nope.yaml"))
    with pytest.raises(ConfigError):
        load_config()


def test_env_file_takes_precedence_over_home(monkeypatch, tmp_path):
    _write(tmp_path / "config.yaml", {"storage": {"ledger": "file"}})
    env_cfg = _write(tmp_path / "other" / "config.yaml", {"storage": {"ledger": "memory"}})
    monkeypatch.setenv("PROPAGENT_CONFIG", str(env_cfg))
    assert load_config().get_ledger_backend() == "memory"


def test_load_config_valid(tmp_path):
    _write(tmp_path / "config.yaml", {
        "storage": {"ledger": "memory", "memory": "memory", "policies_file": str(tmp_path / "p.yaml")},
        "logging": {"level": "debug", "format": "structured", "output": str(tmp_path / "logs" / "pa-{date}.log")},
        "agent": {"timezone": "America/New_York", "reasoning_timeout_seconds": 12},
        "governor": {"failure_threshold_pct": 25},
    })
    cfg = load_config()

    assert cfg.get_log_level() == "DEBUG"
    assert cfg.get_log_format() == "structured"
    assert cfg.get_log_file_path().name == f"pa-{datetime.now().strftime('%Y-%m-%d')}.log"
    assert cfg.get_timezone().key == "America/New_York"
    assert cfg.get_reasoning_timeout() == 12.0

    defaults = cfg.get_governor_defaults()
    assert defaults.failure_threshold_pct == 25
    assert defaults.critical_open_threshold == 5

    assert isinstance(create_ledger(cfg), InMemoryRunLedger)
    assert isinstance(create_memory_store(cfg), InMemoryMemoryStore)
    assert isinstance(create_policy_store(cfg), YamlPolicyStore)


def test_file_backends(tmp_path):
    _write(tmp_path / "config.yaml", {"storage": {"ledger_dir": str(tmp_path / "l"), "memory_path": str(tmp_path / "m.db")}})
    cfg = load_config()
    assert isinstance(create_ledger(cfg), FileRunLedger)
    assert isinstance(create_memory_store(cfg), SQLiteMemoryStore)
    assert isinstance(create_policy_store(cfg), InMemoryPolicyStore)
    assert (tmp_path / "l" / "runs").is_dir()


def test_default_policies_file_used_when_present(tmp_path):
    (tmp_path / "policies.yaml").write_text("policies: []\n")
    assert load_config().get_policies_file() == tmp_path / "policies.yaml"


@pytest.mark.parametrize("data,message", [
    ({"storage": {"ledger": "postgres"}}, "Unknown ledger backend"),
    ({"storage": {"memory": "redis"}}, "Unknown memory backend"),
    ({"logging": {"level": "LOUD"}}, "Invalid log level"),
    ({"agent": {"timezone": "Mars/Olympus"}}, "Invalid timezone"),
    ({"storage": "file"}, "Section 'storage' must be a mapping"),
])
def test_invalid_values(tmp_path, data, message):
    _write(tmp_path / "config.yaml", data)
    with pytest.raises(ConfigError, match=message):
        load_config()


def test_invalid_yaml(tmp_path):
    (tmp_path / "config.yaml").write_text("storage: [unclosed")
    with pytest.raises(ConfigError, match="Invalid YAML syntax"):
        load_config()


def test_empty_file_means_defaults(tmp_path):
    (tmp_path / "config.yaml").write_text("")
    assert load_config().get_memory_backend() == "sqlite"


def test_reasoning_client_factory(tmp_path):
    _write(tmp_path / "config.yaml", {"agent": {"reasoning_timeout_seconds": 5}})
    cfg = load_config()
    assert isinstance(create_reasoning_client(cfg), NoOpReasoningClient)

    client = create_reasoning_client(cfg, compute=MagicMock(), model="small")
    assert isinstance(client, LLMReasoningClient)
    assert client._timeout_seconds == 5.0
