import json
from datetime import datetime, timedelta, timezone

import pytest
import yaml
from click.testing import CliRunner

from propagent.cli import main
from propagent.ledger import FileRunLedger


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def home(tmp_path, monkeypatch):
    home = tmp_path / "custom_home"
    monkeypatch.setenv("PROPAGENT_HOME", str(home))
    monkeypatch.delenv("PROPAGENT_CONFIG", raising=False)
    return home


@pytest.fixture
def config_file(tmp_path):
    """Config with file ledger, sqlite memory and a property policy for prop-1."""
    policies = tmp_path / "policies.yaml"
    policies.write_text(yaml.safe_dump({
        "policies": [{
            "policy_id": "maple",
            "scope_type": "property",
            "scope_id": "prop-1",
            "config": {"spend": {"autoApproveMax": 500}},
        }]
    }))
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "storage": {
            "ledger": "file",
            "ledger_dir": str(tmp_path / "ledger"),
            "memory": "sqlite",
            "memory_path": str(tmp_path / "memory.db"),
            "policies_file": str(policies),
        },
        "logging": {"console": False},
    }))
    return path


def _invoke(runner, config_file, *args):
    return runner.invoke(main, ["--config", str(config_file), *args])


# =============================================================================
# init
# =============================================================================

def test_init_command_creates_files(runner, home):
    result = runner.invoke(main, ["init"])
    assert result.exit_code == 0
    assert "Initialized propagent config" in result.output

    cfg = yaml.safe_load((home / "config.yaml").read_text())
    assert cfg["storage"]["ledger_dir"] == str(home / "ledger")
    assert (home / "policies.yaml").read_text() == "policies: []\n"


def test_init_does_not_overwrite_without_force(runner, home):
    home.mkdir(parents=True)
    (home / "config.yaml").write_text("storage: {}")

    result = runner.invoke(main, ["init"])
    assert result.exit_code == 1
    assert "Config already exists" in result.output
    assert (home / "config.yaml").read_text() == "storage: {}"


def test_init_force_overwrites(runner, home):
    home.mkdir(parents=True)
    (home / "config.yaml").write_text("storage: {}")

    result = runner.invoke(main, ["init", "--force"])
    assert result.exit_code == 0
    assert "governor" in yaml.safe_load((home / "config.yaml").read_text())


def test_command_without_config_fails(runner, home, tmp_path):
    result = runner.invoke(main, ["--config", str(tmp_path / "missing.yaml"), "runs", "list"])
    assert result.exit_code == 1
    assert "Config not loaded" in result.output


# =============================================================================
# policy / dedupe-key
# =============================================================================

def test_policy_show_merges_property_record(runner, config_file):
    result = _invoke(runner, config_file, "policy", "show", "--property", "prop-1")
    assert result.exit_code == 0
    policy = json.loads(result.output)
    assert policy["spend"]["autoApproveMax"] == 500
    assert policy["spend"]["hardBlockAbove"] == 5000


def test_policy_show_global(runner, config_file):
    result = _invoke(runner, config_file, "policy", "show")
    assert json.loads(result.output)["spend"]["autoApproveMax"] == 750


def test_policy_evaluate(runner, config_file):
    result = _invoke(runner, config_file, "policy", "evaluate", "SPEND_APPROVE", "--context", '{"amount": 600}')
    assert json.loads(result.output)["decision"] == "ALLOW"

    result = _invoke(
        runner, config_file, "policy", "evaluate", "SPEND_APPROVE", "--context", '{"amount": 600}', "--property", "prop-1"
    )
    assert json.loads(result.output)["decision"] == "APPROVAL"


def test_policy_evaluate_rejects_bad_context(runner, config_file):
    result = _invoke(runner, config_file, "policy", "evaluate", "SPEND_APPROVE", "--context", "[1, 2]")
    assert result.exit_code == 1
    assert "--context must be a JSON object" in result.output


def test_dedupe_key(runner, home):
    result = runner.invoke(
        main, ["dedupe-key", "event", "PM_DUE-pm-1", "--property", "prop-1", "--bucket", "2026-03-02T15"]
    )
    assert result.exit_code == 0
    assert result.output.strip() == "event|PM_DUE-pm-1|prop-1|2026-03-02T15"


# =============================================================================
# runs
# =============================================================================

def test_runs_list_and_show(runner, config_file, tmp_path):
    ledger = FileRunLedger(tmp_path / "ledger")
    run_id = ledger.create_run("event", property_id="prop-1")
    ledger.start_run(run_id)
    ledger.complete_run(run_id, "All good")

    result = _invoke(runner, config_file, "runs", "list")
    assert result.exit_code == 0
    assert run_id in result.output
    assert "All good" in result.output

    result = _invoke(runner, config_file, "runs", "list", "--status", "failed")
    assert result.output.strip() == "No runs found."

    result = _invoke(runner, config_file, "runs", "show", run_id)
    shown = json.loads(result.output)
    assert shown["run"]["status"] == "COMPLETED"
    assert shown["steps"] == []


def test_runs_list_unknown_status(runner, config_file):
    result = _invoke(runner, config_file, "runs", "list", "--status", "LOST")
    assert result.exit_code == 1
    assert "Unknown status: LOST" in result.output


def test_runs_show_missing(runner, config_file):
    result = _invoke(runner, config_file, "runs", "show", "nope")
    assert result.exit_code == 1
    assert "Run nope not found" in result.output


def test_runs_reconcile(runner, config_file, tmp_path):
    two_hours_ago = datetime.now(timezone.utc) - timedelta(hours=2)
    stale = FileRunLedger(tmp_path / "ledger", clock=lambda: two_hours_ago).create_run("event")

    result = _invoke(runner, config_file, "runs", "reconcile")
    assert result.exit_code == 0
    assert stale in result.output
    assert "Reconciled 1 run(s)" in result.output

    result = _invoke(runner, config_file, "runs", "reconcile")
    assert "No abandoned runs." in result.output


# =============================================================================
# governor
# =============================================================================

def test_governor_kill_switch_round_trip(runner, config_file):
    status = json.loads(_invoke(runner, config_file, "governor", "status").output)
    assert status["autonomy"] == "enabled"

    result = _invoke(runner, config_file, "governor", "kill-switch", "on", "--reason", "storm")
    assert result.exit_code == 0
    assert "Kill switch on" in result.output

    status = json.loads(_invoke(runner, config_file, "governor", "status").output)
    assert status["autonomy"] == "paused"
    assert status["reason"] == "storm"
    assert status["state"]["killSwitch"] is True

    _invoke(runner, config_file, "governor", "kill-switch", "off")
    assert json.loads(_invoke(runner, config_file, "governor", "status").output)["autonomy"] == "enabled"
