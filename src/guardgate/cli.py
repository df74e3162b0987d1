"""guardgate CLI entrypoint.

Commands:
  db migrate
  config presets | show | apply-preset | set
  state show | halt | resume | reset
  check
  submit
  strategy check
  audit stats | export | replay
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click


# ─── Logging setup ────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger("guardgate")

CUSTODY_URL_ENV_VAR = "GUARDGATE_CUSTODY_URL"
MARKET_DATA_URL_ENV_VAR = "GUARDGATE_MARKET_DATA_URL"
DEFAULT_JOURNAL_PATH = "data/audit.jsonl"


def _run(coro: Any) -> Any:
    """Run an async coroutine from sync Click context."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


def _parse_json(text: Optional[str], what: str) -> Dict[str, Any]:
    if not text:
        return {}
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        click.echo("Invalid JSON for {}: {}".format(what, e), err=True)
        sys.exit(1)
    if not isinstance(data, dict):
        click.echo("{} must be a JSON object".format(what), err=True)
        sys.exit(1)
    return data


def _state_secret(secrets_dir: Optional[str]) -> str:
    from guardgate.secrets import InsecureSecretsError, load_secrets
    from guardgate.secrets import secrets_dir as default_secrets_dir

    try:
        loaded = load_secrets(secrets_dir or default_secrets_dir(), required=("LOCAL_STATE_SECRET",))
    except InsecureSecretsError as e:
        click.echo("SECRETS: {}".format(e), err=True)
        sys.exit(1)
    return loaded["LOCAL_STATE_SECRET"]


# ─── Root CLI ─────────────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0", prog_name="guardgate")
def cli() -> None:
    """guardgate: guardian policy engine for outgoing financial actions."""
    pass


# ═══════════════════════════════════════════════════════════════════════════════
# DB commands
# ═══════════════════════════════════════════════════════════════════════════════

@cli.group()
def db() -> None:
    """Database operations."""
    pass


@db.command("migrate")
@click.option("--migrations-dir", default=None, help="Path to migrations directory (default: auto-detect)")
def db_migrate(migrations_dir: Optional[str]) -> None:
    """Run pending database migrations."""
    from guardgate.db import close_pool, get_pool, run_migrations

    mdir = Path(migrations_dir) if migrations_dir else None

    async def _migrate() -> List[str]:
        try:
            pool = await get_pool()
            return await run_migrations(pool, mdir)
        finally:
            await close_pool()

    applied = _run(_migrate())
    if applied:
        click.echo("Applied {} migration(s): {}".format(len(applied), ", ".join(applied)))
    else:
        click.echo("All migrations already applied.")


# ═══════════════════════════════════════════════════════════════════════════════
# CONFIG commands
# ═══════════════════════════════════════════════════════════════════════════════

@cli.group()
def config() -> None:
    """Guardian configuration and presets."""
    pass


@config.command("presets")
def config_presets() -> None:
    """List the built-in presets."""
    from guardgate.config import get_preset, preset_names

    for name in preset_names():
        enabled = get_preset(name).enabled_guardians()
        click.echo("{:<14} {}".format(name, ", ".join(enabled)))


@config.command("show")
@click.option("--preset", default=None, help="Show a built-in preset")
@click.option("--org", default=None, help="Organisation id (loads the stored config)")
@click.option("--account", default=None, help="Account id (loads the stored config)")
def config_show(preset: Optional[str], org: Optional[str], account: Optional[str]) -> None:
    """Show a preset or the stored config of an account."""
    from guardgate.config import get_preset, load_guardians_config
    from guardgate.db import close_pool, get_pool
    from guardgate.errors import ConfigurationError

    if org and account:
        async def _load() -> Any:
            try:
                pool = await get_pool()
                return await load_guardians_config(pool, org, account)
            finally:
                await close_pool()

        _echo_json(_run(_load()).to_dict())
        return

    try:
        _echo_json(get_preset(preset or "default").to_dict())
    except ConfigurationError as e:
        click.echo(str(e), err=True)
        sys.exit(1)


@config.command("apply-preset")
@click.argument("name")
@click.option("--org", required=True, help="Organisation id")
@click.option("--account", required=True, help="Account id")
def config_apply_preset(name: str, org: str, account: str) -> None:
    """Store a preset as the account's config."""
    from guardgate.config import get_preset, save_guardians_config
    from guardgate.db import close_pool, get_pool
    from guardgate.errors import ConfigurationError

    try:
        preset = get_preset(name)
    except ConfigurationError as e:
        click.echo(str(e), err=True)
        sys.exit(1)

    async def _save() -> None:
        try:
            pool = await get_pool()
            await save_guardians_config(pool, org, account, preset)
        finally:
            await close_pool()

    _run(_save())
    click.echo("Preset {} applied to {}/{}".format(name, org, account))


@config.command("set")
@click.option("--org", required=True, help="Organisation id")
@click.option("--account", required=True, help="Account id")
@click.option("--overrides", required=True, help='JSON overrides, e.g. {"spend": {"maxDaily": 500}}')
def config_set(org: str, account: str, overrides: str) -> None:
    """Merge overrides onto the account's stored config."""
    from guardgate.config import load_guardians_config, merge_config, save_guardians_config
    from guardgate.db import close_pool, get_pool
    from guardgate.errors import ConfigurationError

    changes = _parse_json(overrides, "--overrides")

    async def _update() -> Any:
        try:
            pool = await get_pool()
            current = await load_guardians_config(pool, org, account)
            merged = merge_config(current, changes)
            await save_guardians_config(pool, org, account, merged)
            return merged
        finally:
            await close_pool()

    try:
        merged = _run(_update())
    except ConfigurationError as e:
        click.echo("CONFIG: {}".format(e), err=True)
        sys.exit(1)
    _echo_json(merged.to_dict())


# ═══════════════════════════════════════════════════════════════════════════════
# STATE commands
# ═══════════════════════════════════════════════════════════════════════════════

@cli.group()
def state() -> None:
    """Guardian runtime state (signed row in Postgres)."""
    pass


def _with_state(secrets_dir: Optional[str], mutate: Any, save: bool) -> Any:
    from guardgate.db import close_pool, get_pool
    from guardgate.state import (
        GuardianStateStore,
        StateSignatureError,
        restore_guardian_state,
        save_guardian_state,
    )

    secret = _state_secret(secrets_dir)
    store = GuardianStateStore()

    async def _go() -> Any:
        try:
            pool = await get_pool()
            await restore_guardian_state(pool, store, secret)
            mutate(store)
            if save:
                await save_guardian_state(pool, store, secret)
            return store.snapshot()
        finally:
            await close_pool()

    try:
        return _run(_go())
    except StateSignatureError as e:
        click.echo("STATE_TAMPER: {}".format(e), err=True)
        sys.exit(1)


_secrets_option = click.option("--secrets-dir", default=None, help="Secrets directory (default: $GUARDGATE_SECRETS_DIR)")


@state.command("show")
@_secrets_option
def state_show(secrets_dir: Optional[str]) -> None:
    """Print the current guardian state."""
    snap = _with_state(secrets_dir, lambda store: None, save=False)
    _echo_json(snap.to_dict())


@state.command("halt")
@click.option("--reason", required=True, help="Why trading is halted")
@_secrets_option
def state_halt(reason: str, secrets_dir: Optional[str]) -> None:
    """Engage the kill switch."""
    _with_state(secrets_dir, lambda store: store.trigger_halt(reason), save=True)
    click.echo("Trading HALTED: {}".format(reason))


@state.command("resume")
@_secrets_option
def state_resume(secrets_dir: Optional[str]) -> None:
    """Clear the kill switch."""
    _with_state(secrets_dir, lambda store: store.resume_trading(), save=True)
    click.echo("Trading resumed.")


@state.command("reset")
@click.option("--yes", is_flag=True, help="Confirm the reset")
@_secrets_option
def state_reset(yes: bool, secrets_dir: Optional[str]) -> None:
    """Reset counters and the halt latch to the initial state."""
    if not yes:
        click.echo("Refusing to reset without --yes", err=True)
        sys.exit(1)
    _with_state(secrets_dir, lambda store: store.reset_state(), save=True)
    click.echo("Guardian state reset.")


# ═══════════════════════════════════════════════════════════════════════════════
# CHECK / SUBMIT commands
# ═══════════════════════════════════════════════════════════════════════════════

async def _restore_runtime(
    pool: Any, store: Any, secret: str, org: str, account: str, preset: Optional[str],
) -> Any:
    """Restore the signed state into ``store`` and return the base config.

    An explicit preset wins; otherwise the account's stored config is used
    (the default preset when none is stored).
    """
    from guardgate.config import get_preset, load_guardians_config
    from guardgate.state import restore_guardian_state

    await restore_guardian_state(pool, store, secret)
    if preset:
        return get_preset(preset)
    return await load_guardians_config(pool, org, account)


@cli.command("check")
@click.option("--intent", "intent_json", required=True, help="ActionIntent JSON")
@click.option("--org", default="org-paper", help="Organisation id (stored config)")
@click.option("--account", default="acct-paper", help="Account id (stored config)")
@click.option("--preset", default=None, help="Check against a preset instead of the stored config")
@click.option("--overrides", default=None, help="JSON overrides merged onto the config")
@click.option("--fresh", is_flag=True, help="Skip the database: empty state and the preset only")
@_secrets_option
def check(
    intent_json: str,
    org: str,
    account: str,
    preset: Optional[str],
    overrides: Optional[str],
    fresh: bool,
    secrets_dir: Optional[str],
) -> None:
    """Dry-run the risk engine on an intent. Exits 1 when denied.

    Uses the persisted guardian state (halt latch, counters) unless --fresh.
    Never writes state.
    """
    from guardgate.config import get_preset, merge_config
    from guardgate.db import close_pool, get_pool
    from guardgate.errors import ConfigurationError, PolicyDenied, ValidationError
    from guardgate.intent import ActionIntent
    from guardgate.risk_engine import RiskEngine
    from guardgate.state import GuardianStateStore, StateSignatureError

    changes = _parse_json(overrides, "--overrides")
    try:
        intent = ActionIntent.from_dict(_parse_json(intent_json, "--intent"))
    except ValidationError as e:
        click.echo(str(e), err=True)
        sys.exit(1)

    store = GuardianStateStore()
    secret = "" if fresh else _state_secret(secrets_dir)

    async def _load() -> Any:
        try:
            pool = await get_pool()
            return await _restore_runtime(pool, store, secret, org, account, preset)
        finally:
            await close_pool()

    try:
        base = get_preset(preset or "default") if fresh else _run(_load())
        config = merge_config(base, changes)
    except ConfigurationError as e:
        click.echo(str(e), err=True)
        sys.exit(1)
    except StateSignatureError as e:
        click.echo("STATE_TAMPER: {}".format(e), err=True)
        sys.exit(1)

    result = RiskEngine(store).check_all(intent, config)
    _echo_json(result.to_dict())
    try:
        result.raise_for_denials()
    except PolicyDenied as e:
        click.echo("DENIED: {}".format(e), err=True)
        sys.exit(1)


@cli.command("submit")
@click.option("--intent", "intent_json", required=True, help="ActionIntent JSON")
@click.option("--org", default="org-paper", help="Organisation id")
@click.option("--account", default="acct-paper", help="Account id")
@click.option("--preset", default=None, help="Guardian preset (default: the account's stored config)")
@click.option("--source", type=click.Choice(["user", "agent"]), default="user")
@click.option("--journal", "journal_path", default=DEFAULT_JOURNAL_PATH, help="Audit journal path")
@click.option("--live", is_flag=True, help="Use the HTTP custody backend ($GUARDGATE_CUSTODY_URL)")
@_secrets_option
def submit(
    intent_json: str,
    org: str,
    account: str,
    preset: Optional[str],
    source: str,
    journal_path: str,
    live: bool,
    secrets_dir: Optional[str],
) -> None:
    """Gate one intent and send it to custody (PAPER unless --live).

    The signed guardian state is restored before the gate runs and saved
    after it, so the halt latch and daily counters hold across invocations.
    """
    from guardgate.audit import AuditLedger
    from guardgate.config import ActiveGuardiansConfig
    from guardgate.custody import HttpCustodyClient, PaperCustodyClient
    from guardgate.db import close_pool, get_pool
    from guardgate.errors import ConfigurationError
    from guardgate.gate import ActionGate
    from guardgate.journal import AuditJournal
    from guardgate.risk_engine import RiskEngine
    from guardgate.secrets import InsecureSecretsError, load_secrets
    from guardgate.secrets import secrets_dir as default_secrets_dir
    from guardgate.state import GuardianStateStore, StateSignatureError, save_guardian_state

    body = {"actionIntent": _parse_json(intent_json, "--intent"), "source": source, "orgId": org, "accountId": account}
    secret = _state_secret(secrets_dir)

    if live:
        url = os.environ.get(CUSTODY_URL_ENV_VAR)
        if not url:
            click.echo("{} is not set".format(CUSTODY_URL_ENV_VAR), err=True)
            sys.exit(1)
        try:
            api_key = load_secrets(secrets_dir or default_secrets_dir(), required=("CUSTODY_API_KEY",))["CUSTODY_API_KEY"]
        except InsecureSecretsError as e:
            click.echo("SECRETS: {}".format(e), err=True)
            sys.exit(1)
        custody = HttpCustodyClient(url, api_key)  # type: Any
    else:
        custody = PaperCustodyClient()

    store = GuardianStateStore()
    journal = AuditJournal(journal_path)

    async def _go() -> Any:
        try:
            pool = await get_pool()
            config = await _restore_runtime(pool, store, secret, org, account, preset)
            if live:
                await custody.authenticate()
            gate = ActionGate(
                store,
                RiskEngine(store),
                ActiveGuardiansConfig(config),
                custody,
                AuditLedger(journal=journal),
            )
            try:
                return await gate.handle(body)
            finally:
                await save_guardian_state(pool, store, secret)
        finally:
            journal.close()
            if live:
                await custody.close()
            await close_pool()

    try:
        response = _run(_go())
    except ConfigurationError as e:
        click.echo(str(e), err=True)
        sys.exit(1)
    except StateSignatureError as e:
        click.echo("STATE_TAMPER: {}".format(e), err=True)
        sys.exit(1)
    _echo_json(response.to_dict())
    if not response.ok:
        sys.exit(1)


# ═══════════════════════════════════════════════════════════════════════════════
# STRATEGY commands
# ═══════════════════════════════════════════════════════════════════════════════

@cli.group()
def strategy() -> None:
    """Strategy eligibility."""
    pass


@strategy.command("check")
@click.argument("name")
@click.option("--size", default=50.0, help="Requested size in USD")
@click.option("--market-data", default=None, help="Market data JSON (skips the feed)")
@click.option("--overrides", default=None, help="JSON overrides merged onto the strategy preset")
@click.option("--live", is_flag=True, help="Fetch from $GUARDGATE_MARKET_DATA_URL instead of demo data")
def strategy_check(
    name: str,
    size: float,
    market_data: Optional[str],
    overrides: Optional[str],
    live: bool,
) -> None:
    """Check whether a strategy is eligible to trade right now."""
    from guardgate.errors import ConfigurationError, ValidationError
    from guardgate.market_data import HttpMarketDataFeed, StaticMarketDataFeed
    from guardgate.risk_engine import RiskEngine
    from guardgate.state import GuardianStateStore
    from guardgate.strategy import StrategyEligibilityChecker

    checker = StrategyEligibilityChecker(RiskEngine(GuardianStateStore()))
    changes = _parse_json(overrides, "--overrides") or None

    try:
        if market_data:
            result = checker.check_eligibility(name, changes, _parse_json(market_data, "--market-data"), size)
        else:
            if live:
                url = os.environ.get(MARKET_DATA_URL_ENV_VAR)
                if not url:
                    click.echo("{} is not set".format(MARKET_DATA_URL_ENV_VAR), err=True)
                    sys.exit(1)
                feed = HttpMarketDataFeed(url)  # type: Any
            else:
                feed = StaticMarketDataFeed()
            result = _run(checker.check_eligibility_live(feed, name, changes, size))
    except (ConfigurationError, ValidationError) as e:
        click.echo(str(e), err=True)
        sys.exit(1)

    _echo_json(result.to_dict())
    if not result.eligible:
        sys.exit(1)


# ═══════════════════════════════════════════════════════════════════════════════
# AUDIT commands
# ═══════════════════════════════════════════════════════════════════════════════

@cli.group()
def audit() -> None:
    """Audit ledger operations."""
    pass


_journal_option = click.option("--journal", "journal_path", default=DEFAULT_JOURNAL_PATH, help="Audit journal path")


def _load_ledger(journal_path: str) -> Any:
    from guardgate.audit import AuditLedger
    from guardgate.journal import JournalSyncError

    try:
        return AuditLedger.from_journal(journal_path)
    except JournalSyncError as e:
        click.echo("Journal unreadable: {}".format(e), err=True)
        sys.exit(1)


def _audit_filter(status: Optional[str], action_type: Optional[str], search: Optional[str]) -> Any:
    from guardgate.audit import AuditFilter

    return AuditFilter(
        statuses=status.split(",") if status else None,
        action_types=action_type.split(",") if action_type else None,
        search=search,
    )


@audit.command("stats")
@_journal_option
def audit_stats(journal_path: str) -> None:
    """Aggregate counts over the journal."""
    _echo_json(_load_ledger(journal_path).stats())


@audit.command("export")
@_journal_option
@click.option("--status", default=None, help="Comma-separated statuses")
@click.option("--action-type", default=None, help="Comma-separated action types")
@click.option("--search", default=None, help="Search tx hash, order id, market, description")
@click.option("--output", "-o", default="-", help="Output file (default: stdout)")
def audit_export(
    journal_path: str,
    status: Optional[str],
    action_type: Optional[str],
    search: Optional[str],
    output: str,
) -> None:
    """Export audit records as CSV."""
    data = _load_ledger(journal_path).export_csv(_audit_filter(status, action_type, search))
    if output == "-":
        click.echo(data.decode("utf-8"), nl=False)
    else:
        Path(output).write_bytes(data)
        click.echo("Exported to {}".format(output))


@audit.command("replay")
@_journal_option
def audit_replay(journal_path: str) -> None:
    """Load the journal into the audit_records table."""
    from guardgate.db import close_pool, get_pool
    from guardgate.journal import JournalSyncError, replay_journal

    async def _replay() -> Dict[str, int]:
        try:
            pool = await get_pool()
            return await replay_journal(journal_path, pool)
        finally:
            await close_pool()

    try:
        stats = _run(_replay())
    except JournalSyncError as e:
        click.echo("Journal replay failed: {}".format(e), err=True)
        sys.exit(1)
    click.echo("Journal replay complete: inserted={} skipped={}".format(stats["inserted"], stats["skipped"]))


if __name__ == "__main__":
    cli()
