# ruff: noqa: I001
"""CLI for the ``fiscal_ledger`` package.

Operator entrypoints for the bulk jobs (L0 normalization, review repair,
legacy category migration), the rule tables (seed, publish, add), Plaid item
linking and account sync. ``.env`` in the working directory is loaded with
``python-dotenv`` before settings are read; existing environment variables
always win.

Every command prints a per-owner (or per-account) summary table and exits
with status 1 when any owner failed, 2 on configuration errors.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from functools import partial
from pathlib import Path
from typing import Annotated

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table
from typer.models import OptionInfo
from sqlalchemy.orm import Session

from ledger_db.client import get_session_factory

from .config import LedgerSettings, load_settings
from .deep_categorize import deep_categorize
from .errors import ConfigurationError, LedgerError
from .ingest.seed_rules import DEFAULT_SEED_FILE, load_seed_groups, seed_global_rules
from .logging_setup import configure_logging
from .migrate import (
    LegacyMappingTransform,
    MigrationRunner,
    RepairTransform,
    load_category_mappings,
    normalize_l0_transform,
)
from .models import RunStats
from .persistence import link_accounts, list_owner_ids, load_user_context
from .pipeline import DeepFallback, ResolutionPipeline
from .plaid import PlaidClient
from .rules import AllowlistAuthorizer, RuleStore
from .sync import SyncEngine, SyncResult, account_targets, sync_owners
from .taxonomy import label_from_primary

console = Console()


# ---- Helpers -----------------------------------------------------------------


def _settings(database_url: str | None, **overrides: object) -> LedgerSettings:
    try:
        settings = load_settings(database_url=database_url, **overrides)
        settings.require("database_url")
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2) from e
    return settings


def _require(settings: LedgerSettings, *fields: str) -> None:
    try:
        settings.require(*fields)
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2) from e


def _session_factory(settings: LedgerSettings) -> Callable[[], Session]:
    return get_session_factory(database_url=settings.database_url)


def _deep_fallback(settings: LedgerSettings, deep: bool | None) -> DeepFallback | None:
    if deep is None:
        deep = bool(settings.openai_api_key)
    if not deep:
        return None
    _require(settings, "openai_api_key")
    return partial(deep_categorize, model=settings.deep_model)


def _print_run_stats(title: str, rows: Sequence[RunStats], *, dry_run: bool) -> bool:
    table = Table(title=f"{title} (dry run)" if dry_run else title)
    for col in ("Owner", "Scanned", "Updated", "Skipped", "Errored", "Error"):
        table.add_column(col, justify="right" if col in ("Scanned", "Updated", "Skipped", "Errored") else "left")
    for s in rows:
        table.add_row(
            s.owner_id, str(s.scanned), str(s.updated), str(s.skipped), str(s.errored), s.error or ""
        )
    console.print(table)
    return any(s.failed for s in rows)


def _print_sync_results(rows: Sequence[SyncResult]) -> bool:
    table = Table(title="sync")
    for col in ("Owner", "Account", "Pages", "Added", "Modified", "Removed", "Error"):
        table.add_column(col)
    for r in rows:
        table.add_row(
            r.user_id,
            r.account_id,
            str(r.pages),
            str(r.added),
            str(r.modified),
            str(r.removed),
            r.error or "",
        )
    console.print(table)
    return any(r.failed for r in rows)


def _owners(factory: Callable[[], Session], user_ids: list[str] | None) -> list[str]:
    if user_ids:
        return list(user_ids)
    session = factory()
    try:
        return list_owner_ids(session)
    finally:
        session.close()


def _runner(settings: LedgerSettings) -> MigrationRunner:
    return MigrationRunner(
        _session_factory(settings),
        page_size=settings.page_size,
        batch_size=settings.batch_size,
        dry_run=settings.dry_run,
    )


# ---- Typer app ---------------------------------------------------------------


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help="FiscalFlow ledger tools: categorization repair, migrations, rules and sync.",
)

# Module-level option objects for the options shared by several commands.
USER_IDS_OPTION: OptionInfo = typer.Option(
    None, "--user-id", help="Owner to process; repeatable. Defaults to all owners."
)
DRY_RUN_OPTION: OptionInfo = typer.Option(
    None,
    "--dry-run/--no-dry-run",
    help="Compute statistics without writing (default: FISCAL_LEDGER_DRY_RUN).",
)
DEEP_OPTION: OptionInfo = typer.Option(
    None,
    "--deep/--no-deep",
    help="Use the generative fallback (default: when OPENAI_API_KEY is set).",
)
DATABASE_URL_OPTION: OptionInfo = typer.Option(
    None, help="Override DATABASE_URL (falls back to env var)."
)
REQUIRED_USER_OPTION: OptionInfo = typer.Option(..., "--user-id", help="Owner to process.")


@app.command("normalize-l0")
def normalize_l0_cmd(
    user_ids: list[str] | None = USER_IDS_OPTION,
    dry_run: bool | None = DRY_RUN_OPTION,
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Rewrite every stored ``l0`` into the six canonical values."""

    settings = _settings(database_url, dry_run=dry_run)
    runner = _runner(settings)
    owners = _owners(_session_factory(settings), user_ids)
    stats = runner.run_owners(owners, normalize_l0_transform, concurrency=settings.concurrency)
    if _print_run_stats("normalize-l0", stats, dry_run=settings.dry_run):
        raise typer.Exit(1)


@app.command("repair-uncategorized")
def repair_uncategorized_cmd(
    user_id: Annotated[str, REQUIRED_USER_OPTION],
    *,
    deep: bool | None = DEEP_OPTION,
    dry_run: bool | None = DRY_RUN_OPTION,
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Re-resolve ``needs-review`` records and keep only better answers."""

    settings = _settings(database_url, dry_run=dry_run)
    fallback = _deep_fallback(settings, deep)
    factory = _session_factory(settings)
    runner = _runner(settings)

    session = factory()
    try:
        pipeline = ResolutionPipeline(RuleStore(session), fallback=fallback)
        transform = RepairTransform(pipeline, {user_id: load_user_context(session, user_id)})
        stats = runner.run_owners([user_id], transform, where=RepairTransform.where)
    finally:
        session.close()
    if _print_run_stats("repair-uncategorized", stats, dry_run=settings.dry_run):
        raise typer.Exit(1)


@app.command("migrate-legacy-categories")
def migrate_legacy_categories_cmd(
    user_ids: list[str] | None = USER_IDS_OPTION,
    dry_run: bool | None = DRY_RUN_OPTION,
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Map legacy ``"A > B > C"`` categories into the four-level hierarchy."""

    settings = _settings(database_url, dry_run=dry_run)
    factory = _session_factory(settings)
    session = factory()
    try:
        mappings = load_category_mappings(session)
    finally:
        session.close()
    transform = LegacyMappingTransform(mappings)
    stats = _runner(settings).run_owners(
        _owners(factory, user_ids),
        transform,
        where=LegacyMappingTransform.where,
        concurrency=settings.concurrency,
    )
    if _print_run_stats("migrate-legacy-categories", stats, dry_run=settings.dry_run):
        raise typer.Exit(1)


@app.command("seed-global-rules")
def seed_global_rules_cmd(
    seed_file: Path = typer.Option(DEFAULT_SEED_FILE, help="Keyword group JSON file."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Merge the static keyword table into the global rule table."""

    settings = _settings(database_url)
    groups = load_seed_groups(seed_file)
    session = _session_factory(settings)()
    try:
        written = seed_global_rules(session, groups)
    finally:
        session.close()
    console.print(f"Seeded {written} global rules from {len(groups)} groups")


@app.command("publish-rules")
def publish_rules_cmd(
    user_id: Annotated[str, REQUIRED_USER_OPTION],
    actor: Annotated[str, typer.Option(..., "--actor", help="Operator performing the publish.")],
    *,
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Promote a user's keyword rules to the global table."""

    settings = _settings(database_url)
    authorizer = AllowlistAuthorizer(actor_id=actor, allowed=settings.rule_publishers)
    session = _session_factory(settings)()
    try:
        written = RuleStore(session).publish(user_id, authorizer=authorizer)
    except LedgerError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e
    finally:
        session.close()
    console.print(f"Published {written} rules from {user_id}")


@app.command("add-rule")
def add_rule_cmd(
    user_id: Annotated[str, REQUIRED_USER_OPTION],
    keyword: Annotated[str, typer.Option(..., "--keyword", help="Text matched inside descriptions.")],
    primary: Annotated[str, typer.Option(..., "--primary", help="Primary category (level 1).")],
    *,
    secondary: str = typer.Option("", help="Secondary category (level 2)."),
    sub: str = typer.Option("", help="Sub category (level 3)."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Learn a user keyword rule."""

    settings = _settings(database_url)
    label = label_from_primary(primary, secondary, sub, amount=-1)
    session = _session_factory(settings)()
    try:
        rule = RuleStore(session).save_user_rule(user_id, keyword, label)
    finally:
        session.close()
    console.print(f"Saved rule {rule.key} -> {rule.label.l0} > {rule.label.path}")


@app.command("link-token")
def link_token_cmd(
    user_id: Annotated[str, REQUIRED_USER_OPTION],
    *,
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Create a Plaid Link token for a user (webhook from PLAID_WEBHOOK_URL)."""

    settings = _settings(database_url)
    _require(settings, "plaid_client_id", "plaid_secret")
    client = PlaidClient.from_settings(settings)
    try:
        token = client.create_link_token(user_id, webhook=settings.plaid_webhook_url)
    except LedgerError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e
    finally:
        client.close()
    console.print(token)


@app.command("link-item")
def link_item_cmd(
    user_id: Annotated[str, REQUIRED_USER_OPTION],
    public_token: Annotated[str, typer.Option(..., "--public-token", help="Token returned by Plaid Link.")],
    *,
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Exchange a Link public token and register the item's accounts."""

    settings = _settings(database_url)
    _require(settings, "plaid_client_id", "plaid_secret")
    client = PlaidClient.from_settings(settings)
    session = _session_factory(settings)()
    try:
        creds = client.exchange_public_token(public_token)
        accounts = client.get_accounts(creds.access_token)
        if settings.plaid_webhook_url:
            client.update_item_webhook(creds.access_token, settings.plaid_webhook_url)
        linked = link_accounts(
            session,
            user_id,
            item_id=creds.item_id,
            access_token=creds.access_token,
            accounts=((a.account_id, a.name) for a in accounts),
        )
    except LedgerError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e
    finally:
        session.close()
        client.close()
    console.print(f"Linked item {creds.item_id} with {linked} accounts for {user_id}")


@app.command("sync")
def sync_cmd(
    user_id: Annotated[str, REQUIRED_USER_OPTION],
    *,
    account_ids: list[str] | None = typer.Option(
        None, "--account-id", help="Account to sync; repeatable. Defaults to all linked accounts."
    ),
    deep: bool | None = DEEP_OPTION,
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Pull pending Plaid changes for a user's accounts."""

    settings = _settings(database_url)
    _require(settings, "plaid_client_id", "plaid_secret")
    fallback = _deep_fallback(settings, deep)
    factory = _session_factory(settings)
    feed = PlaidClient.from_settings(settings)

    session = factory()
    try:
        targets = account_targets(session, user_id, account_ids or ())
    finally:
        session.close()

    rule_sessions: list[Session] = []

    def _engine() -> SyncEngine:
        rule_session = factory()
        rule_sessions.append(rule_session)
        return SyncEngine(
            factory,
            feed,
            ResolutionPipeline(RuleStore(rule_session), fallback=fallback),
            batch_ceiling=settings.batch_size,
            removed_policy=settings.removed_policy,
        )

    try:
        results = sync_owners(targets, _engine, concurrency=settings.concurrency)
    finally:
        for s in rule_sessions:
            s.close()
        feed.close()
    if _print_sync_results(results):
        raise typer.Exit(1)


@app.callback(invoke_without_command=True)
def _root(ctx: typer.Context) -> None:
    """Root command.

    Loads ``.env`` from the current working directory (without overriding any
    already-set environment variables) and configures logging.
    """

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging()

    if ctx.invoked_subcommand is None:
        typer.echo("No subcommand provided. Use --help to see available commands.")
        raise typer.Exit(1)


if __name__ == "__main__":  # pragma: no cover
    app()
