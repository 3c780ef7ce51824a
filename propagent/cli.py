"""
CLI interface for propagent.

Operator commands for inspecting policy, the run ledger and the safety
governor. Workflows themselves are started by EventDispatcher.publish from
the host application; nothing here executes a workflow.
"""

import json
from datetime import timedelta

import click

from propagent import __version__
from propagent.errors import PropagentError


def _config(ctx):
    """Configuration loaded by the group, or exit 1 with the load error."""
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'propagent init' to create a configuration file.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


def _fail(message: str) -> None:
    click.echo(f"✗ {message}", err=True)
    raise SystemExit(1)


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.version_option(version=__version__, prog_name="propagent")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Config file (defaults to $PROPAGENT_CONFIG, then $PROPAGENT_HOME/config.yaml)",
)
@click.pass_context
def main(ctx, config_path):
    """
    propagent - Policy-governed property management automation.

    Inspect policies, runs and the safety governor.
    """
    from pathlib import Path

    from propagent.config import load_config
    from propagent.utils import setup_logging

    ctx.ensure_object(dict)
    try:
        config = load_config(Path(config_path) if config_path else None)
    except PropagentError as e:
        # init runs without a config; other commands check ctx.obj
        ctx.obj["config_error"] = str(e)
        return

    ctx.obj["config"] = config
    setup_logging(
        log_file=config.get_log_file_path(),
        log_level=config.get_log_level(),
        log_format=config.get_log_format(),
        console_output=config.should_log_to_console(),
    )


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize propagent configuration."""
    import yaml

    from propagent.config import get_propagent_home

    home = get_propagent_home()
    home.mkdir(parents=True, exist_ok=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        _fail(f"Config already exists at {cfg_path}. Use --force to overwrite.")

    default_cfg = {
        "storage": {
            "ledger": "file",
            "ledger_dir": str(home / "ledger"),
            "memory": "sqlite",
            "memory_path": str(home / "memory.db"),
            "policies_file": str(home / "policies.yaml"),
        },
        "logging": {
            "level": "INFO",
            "format": "pretty",
            "output": str(home / "logs" / "propagent-{date}.log"),
            "console": True,
        },
        "agent": {"timezone": "UTC", "reasoning_timeout_seconds": 30},
        "governor": {"failure_threshold_pct": 40, "critical_open_threshold": 5, "window_hours": 6},
    }
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    policies_path = home / "policies.yaml"
    if not policies_path.exists():
        policies_path.write_text("policies: []\n")

    click.echo(f"Initialized propagent config at {cfg_path}")


# =============================================================================
# Policy Commands
# =============================================================================

@main.group("policy")
def policy_group():
    """Inspect and evaluate policies."""
    pass


@policy_group.command("show")
@click.option("--property", "property_id", default=None, help="Property id (omit for the global policy)")
@click.pass_context
def policy_show(ctx, property_id):
    """Show the effective policy for a property."""
    from propagent.config import create_policy_store

    config = _config(ctx)
    try:
        policy = create_policy_store(config).load_policy_for_property(property_id)
    except PropagentError as e:
        _fail(str(e))
    _echo_json(policy.to_dict())


@policy_group.command("evaluate")
@click.argument("action_type")
@click.option("--context", "context_json", default="{}", help="Action context as a JSON object")
@click.option("--property", "property_id", default=None, help="Property id whose policy applies")
@click.pass_context
def policy_evaluate(ctx, action_type, context_json, property_id):
    """Evaluate ACTION_TYPE against the effective policy.

    Example:

        propagent policy evaluate SPEND_APPROVE --context '{"amount": 900}'
    """
    from propagent.config import create_policy_store
    from propagent.policy.engine import evaluate_action

    config = _config(ctx)
    try:
        context = json.loads(context_json)
    except json.JSONDecodeError as e:
        _fail(f"Invalid --context JSON: {e}")
    if not isinstance(context, dict):
        _fail("--context must be a JSON object")

    try:
        policy = create_policy_store(config).load_policy_for_property(property_id)
    except PropagentError as e:
        _fail(str(e))
    _echo_json(evaluate_action(action_type, context, policy).to_dict())


# =============================================================================
# Dedupe Keys
# =============================================================================

@main.command("dedupe-key")
@click.argument("trigger_type")
@click.argument("trigger_ref")
@click.option("--property", "property_id", default=None, help="Property id (empty segment when omitted)")
@click.option("--bucket", default=None, help="Date bucket (defaults to the current UTC hour)")
def dedupe_key(trigger_type, trigger_ref, property_id, bucket):
    """Print the dedupe key for a trigger."""
    from propagent.idem_keys import hour_bucket, make_dedupe_key
    from propagent.utils import utcnow

    click.echo(make_dedupe_key(trigger_type, trigger_ref, property_id, bucket or hour_bucket(utcnow())))


# =============================================================================
# Run Ledger Commands
# =============================================================================

@main.group("runs")
def runs_group():
    """Inspect the run ledger."""
    pass


@runs_group.command("list")
@click.option("--status", default=None, help="Filter by status (QUEUED, RUNNING, COMPLETED, ESCALATED, FAILED)")
@click.pass_context
def runs_list(ctx, status):
    """List runs, newest first."""
    from propagent.config import create_ledger
    from propagent.schemas.ledger import RunStatus

    config = _config(ctx)
    status_filter = None
    if status:
        try:
            status_filter = RunStatus(status.upper())
        except ValueError:
            _fail(f"Unknown status: {status}. Available: {', '.join(s.value for s in RunStatus)}")

    runs = create_ledger(config).list_runs(status=status_filter)
    if not runs:
        click.echo("No runs found.")
        return

    for run in runs:
        detail = run.summary or run.error or ""
        click.echo(
            f"{run.run_id}  {run.status.value:<10} {run.trigger_type:<8} "
            f"{run.property_id or '-':<12} {run.created_at.isoformat()}  {detail}"
        )


@runs_group.command("show")
@click.argument("run_id")
@click.pass_context
def runs_show(ctx, run_id):
    """Show a run with its steps, action log and exceptions."""
    from propagent.config import create_ledger

    ledger = create_ledger(_config(ctx))
    run = ledger.get_run(run_id)
    if run is None:
        _fail(f"Run {run_id} not found")

    _echo_json({
        "run": run.to_dict(),
        "steps": [s.to_dict() for s in ledger.get_steps(run_id)],
        "actionLogs": [a.to_dict() for a in ledger.list_action_logs(run_id)],
        "exceptions": [e.to_dict() for e in ledger.list_exceptions(run_id=run_id)],
    })


@runs_group.command("reconcile")
@click.option(
    "--older-than-minutes",
    type=int,
    default=60,
    show_default=True,
    help="Fail non-terminal runs older than this",
)
@click.pass_context
def runs_reconcile(ctx, older_than_minutes):
    """Fail runs abandoned by a crashed process."""
    from propagent.config import create_ledger

    if older_than_minutes < 0:
        _fail("--older-than-minutes must not be negative")
    try:
        reconciled = create_ledger(_config(ctx)).reconcile_abandoned(timedelta(minutes=older_than_minutes))
    except PropagentError as e:
        _fail(str(e))

    if not reconciled:
        click.echo("No abandoned runs.")
        return
    for run_id in reconciled:
        click.echo(f"  {run_id}")
    click.echo(f"✓ Reconciled {len(reconciled)} run(s)")


# =============================================================================
# Safety Governor Commands
# =============================================================================

def _governor(config):
    from propagent.config import create_ledger, create_memory_store, create_policy_store
    from propagent.governor import SafetyGovernor

    return SafetyGovernor(
        store=create_memory_store(config),
        ledger=create_ledger(config),
        policy_store=create_policy_store(config),
        defaults=config.get_governor_defaults(),
    )


@main.group("governor")
def governor_group():
    """Inspect and control the safety governor."""
    pass


@governor_group.command("status")
@click.pass_context
def governor_status(ctx):
    """Show the kill switch, auto-pause window and thresholds."""
    governor = _governor(_config(ctx))
    check = governor.can_execute_autonomy()
    _echo_json({
        "autonomy": "enabled" if check.ok else "paused",
        "reason": check.reason,
        "state": governor.get_state().to_dict(),
    })


@governor_group.command("kill-switch")
@click.argument("state", type=click.Choice(["on", "off"]))
@click.option("--reason", default=None, help="Why the kill switch is being set")
@click.pass_context
def governor_kill_switch(ctx, state, reason):
    """Turn the global kill switch on or off."""
    governor = _governor(_config(ctx))
    try:
        governor.set_kill_switch(state == "on", reason)
    except PropagentError as e:
        _fail(str(e))
    click.echo(f"✓ Kill switch {state}")


if __name__ == "__main__":
    main()
