"""
Command-line interface for crm_sync.

Provides CLI commands for authentication, synchronization, local contact
editing and status checking for CRM owners and their Google Contacts.

Usage:
    # Show help
    crm-sync --help

    # Authorize an owner's Google account
    crm-sync auth --owner alice

    # Check status
    crm-sync status

    # Run synchronization
    crm-sync sync --owner alice
    crm-sync sync --owner alice --direction to_remote --dry-run
"""

import sys
from pathlib import Path
from typing import Optional

import click

from crm_sync import __version__
from crm_sync.api.directory_api import DirectoryAPI
from crm_sync.auth.google_auth import AuthenticationError, GoogleAuth, validate_owner_id
from crm_sync.cli.formatters import (
    format_contact_line,
    format_last_run,
    show_planned_changes,
    show_problems,
)
from crm_sync.config.generator import save_config_file
from crm_sync.config.loader import DEFAULT_CONFIG_FILE, ConfigError, ConfigLoader
from crm_sync.config.sync_config import SyncConfig
from crm_sync.daemon import DaemonScheduler, parse_interval
from crm_sync.storage.db import ContactStore, LocalStoreError
from crm_sync.sync.contact import ContactFields
from crm_sync.sync.engine import FatalFetchError, SyncEngine, SyncInProgressError
from crm_sync.sync.planner import SyncDirection
from crm_sync.utils import resolve_config_dir
from crm_sync.utils.logging import cleanup_old_logs, get_logger, setup_logging

DIRECTION_CHOICES = [d.value for d in SyncDirection]


def validate_owner(
    ctx: Optional[click.Context],
    _param: Optional[click.Parameter],
    value: Optional[str],
) -> Optional[str]:
    """Validate an owner identifier for Click options."""
    if value is None:
        return value
    try:
        return validate_owner_id(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


def get_config_dir(config_dir: Optional[str]) -> Path:
    """Get the configuration directory path."""
    return resolve_config_dir(config_dir)


def get_config_file(config_file: Optional[str], config_dir: Path) -> Path:
    """Get the configuration file path."""
    if config_file:
        return Path(config_file).expanduser()
    return config_dir / DEFAULT_CONFIG_FILE


def open_store(ctx: click.Context) -> ContactStore:
    """Open and initialize the configured contact store."""
    sync_config: SyncConfig = ctx.obj["sync_config"]
    db_path = sync_config.resolve_database_path(ctx.obj["config_dir"])
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = ContactStore(str(db_path))
    store.initialize()
    return store


def build_engine(ctx: click.Context) -> SyncEngine:
    """Wire the directory client, store and engine from the loaded config."""
    sync_config: SyncConfig = ctx.obj["sync_config"]
    auth = GoogleAuth(config_dir=ctx.obj["config_dir"])
    directory = DirectoryAPI(
        auth.get_credentials,
        page_size=sync_config.api_page_size,
        max_retries=sync_config.api_max_retries,
        initial_retry_delay=sync_config.api_initial_retry_delay,
        max_retry_delay=sync_config.api_max_retry_delay,
    )
    return SyncEngine(directory, open_store(ctx), sync_config)


def owner_option(help_text: str = "CRM owner id."):
    """Required --owner option shared by the per-owner commands."""
    return click.option(
        "--owner",
        "-o",
        required=True,
        callback=validate_owner,
        help=help_text,
    )


@click.group()
@click.version_option(version=__version__, prog_name="crm-sync")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar="CRM_SYNC_CONFIG_DIR",
    help="Configuration directory path (default: ~/.crm-sync).",
)
@click.option(
    "--config-file",
    "-f",
    type=click.Path(exists=False, file_okay=True, dir_okay=False),
    envvar="CRM_SYNC_CONFIG_FILE",
    help="Configuration file path (default: <config dir>/config.yaml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    config_dir: Optional[str],
    config_file: Optional[str],
) -> None:
    """
    CRM to Google Contacts Sync.

    Reconciles each CRM owner's local contact table with that owner's
    Google Contacts, keeping a cross-reference per contact.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = get_config_dir(config_dir)
    resolved_config_file = get_config_file(config_file, resolved_config_dir)

    ctx.obj["config_dir"] = resolved_config_dir
    ctx.obj["config_file"] = resolved_config_file

    config: dict = {}
    sync_config = SyncConfig()
    try:
        loader = ConfigLoader(config_dir=resolved_config_dir)
        config = loader.load_from_file(resolved_config_file)
        if config:
            loader.validate(config)
        sync_config = SyncConfig.from_dict(config)
    except ConfigError as e:
        # Fall back to defaults so commands like init-config still work
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )
        config = {}

    ctx.obj["config"] = config

    effective_verbose = verbose or sync_config.verbose
    sync_config = sync_config.with_overrides(verbose=effective_verbose)
    ctx.obj["sync_config"] = sync_config
    ctx.obj["verbose"] = effective_verbose

    log_dir = sync_config.resolve_log_dir() or resolved_config_dir / "logs"
    setup_logging(verbose=effective_verbose, log_dir=log_dir, enable_file_logging=True)
    cleanup_old_logs(log_dir=log_dir, keep_count=sync_config.log_retention_count)


# =============================================================================
# Init-Config Command
# =============================================================================


@cli.command("init-config")
@click.option(
    "--force",
    is_flag=True,
    help="Overwrite existing configuration file if it exists.",
)
@click.pass_context
def init_config_command(ctx: click.Context, force: bool) -> None:
    """
    Generate a default configuration file.

    Creates a configuration file with all available options documented
    and commented out.

    Examples:

        crm-sync init-config

        crm-sync init-config --force
    """
    logger = get_logger(__name__)
    config_file = ctx.obj["config_file"]

    click.echo(f"Creating configuration file: {config_file}")

    success, error = save_config_file(config_file, overwrite=force)

    if success:
        click.echo(click.style("Configuration file created successfully!", fg="green"))
        click.echo(f"\nLocation: {config_file}")
        click.echo("\nNext steps:")
        click.echo("1. Edit the file to uncomment and configure desired options")
        click.echo("2. Run 'crm-sync auth --owner <id>' for each CRM owner")
    else:
        click.echo(click.style(f"Error: {error}", fg="red"), err=True)
        logger.error(f"Failed to create configuration file: {error}")
        sys.exit(1)


# =============================================================================
# Auth Commands
# =============================================================================


@cli.command("auth")
@owner_option("Owner whose Google account to authorize.")
@click.option(
    "--force",
    is_flag=True,
    help="Force re-authentication even if already authenticated.",
)
@click.pass_context
def auth_command(ctx: click.Context, owner: str, force: bool) -> None:
    """
    Authorize an owner's Google account.

    Opens a browser window to complete the OAuth flow and stores
    the credentials for future syncs.

    Examples:

        crm-sync auth --owner alice

        crm-sync auth --owner alice --force
    """
    logger = get_logger(__name__)
    config_dir = ctx.obj["config_dir"]

    click.echo(f"Authenticating {owner}...")

    try:
        auth = GoogleAuth(config_dir=config_dir)

        if not force and auth.is_authenticated(owner):
            click.echo(
                click.style(f"Owner {owner} is already authenticated.", fg="green")
            )
            click.echo("Use --force to re-authenticate.")
            return

        auth.authenticate(owner, force_reauth=force)
        click.echo(click.style(f"Successfully authenticated {owner}!", fg="green"))

    except FileNotFoundError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        click.echo("\nTo get started:", err=True)
        click.echo("1. Go to https://console.cloud.google.com/", err=True)
        click.echo("2. Create a project and enable the People API", err=True)
        click.echo("3. Create OAuth 2.0 credentials (Desktop application)", err=True)
        click.echo(
            f"4. Download and save as: {config_dir / 'credentials.json'}", err=True
        )
        sys.exit(1)

    except AuthenticationError as e:
        logger.error(f"Authentication failed: {e}")
        click.echo(click.style(f"Authentication failed: {e}", fg="red"), err=True)
        sys.exit(1)


@cli.command("clear-auth")
@owner_option("Owner whose stored token to remove.")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def clear_auth_command(ctx: click.Context, owner: str, yes: bool) -> None:
    """
    Remove an owner's stored OAuth token.

    The owner must authenticate again before the next sync.

    Example:

        crm-sync clear-auth --owner alice
    """
    if not yes:
        click.confirm(f"Remove stored credentials for {owner}?", abort=True)

    auth = GoogleAuth(config_dir=ctx.obj["config_dir"])
    if auth.clear_credentials(owner):
        click.echo(click.style(f"Cleared credentials for {owner}.", fg="green"))
    else:
        click.echo(f"No stored credentials for {owner}.")


# =============================================================================
# Status Command
# =============================================================================


@cli.command("status")
@click.option("--owner", "-o", callback=validate_owner, help="Only show this owner.")
@click.pass_context
def status_command(ctx: click.Context, owner: Optional[str]) -> None:
    """
    Show authentication and sync status.

    Lists each known owner with their authentication state, local contact
    counts and last sync run.

    Example:

        crm-sync status
    """
    logger = get_logger(__name__)
    config_dir = ctx.obj["config_dir"]
    sync_config: SyncConfig = ctx.obj["sync_config"]
    db_path = sync_config.resolve_database_path(config_dir)

    auth = GoogleAuth(config_dir=config_dir)

    click.echo("=== CRM Contact Sync Status ===\n")
    click.echo(f"Configuration directory: {config_dir}")
    creds_status = (
        "Found"
        if auth.credentials_path.exists()
        else click.style("Not found", fg="red")
    )
    click.echo(f"OAuth credentials: {creds_status}")
    click.echo(f"Database: {db_path}")
    click.echo(f"Default direction: {sync_config.direction.value}")
    click.echo()

    store: Optional[ContactStore] = None
    if db_path.exists():
        try:
            store = open_store(ctx)
        except LocalStoreError as e:
            logger.warning(f"Could not open database: {e}")
            click.echo(click.style(f"Database error: {e}", fg="yellow"))

    if owner:
        owners = [owner]
    else:
        known = set(auth.list_owners())
        if store is not None:
            known.update(store.list_owners())
        owners = sorted(known)

    if not owners:
        click.echo("No owners found. Run 'crm-sync auth --owner <id>' to start.")
        return

    for owner_id in owners:
        auth_status = auth.get_auth_status(owner_id)
        if auth_status["authenticated"]:
            status_text = click.style("Authenticated", fg="green")
        elif auth_status["token_exists"]:
            status_text = click.style("Token expired or invalid", fg="yellow")
        else:
            status_text = click.style("Not authenticated", fg="red")

        click.echo(f"{owner_id}: {status_text}")

        if store is None:
            click.echo("  No local contacts")
            continue

        total = store.count_by_owner(owner_id)
        linked = store.count_by_owner(owner_id, linked_only=True)
        click.echo(f"  Local contacts: {total} ({linked} linked)")
        click.echo(f"  Last sync: {format_last_run(store.get_last_run(owner_id))}")


# =============================================================================
# Sync Command
# =============================================================================


@cli.command("sync")
@owner_option("Owner whose contacts to synchronize.")
@click.option(
    "--direction",
    "-d",
    type=click.Choice(DIRECTION_CHOICES, case_sensitive=False),
    default=None,
    help="Which side to write (default: config value or 'both').",
)
@click.option(
    "--dry-run", "-n", is_flag=True, help="Preview changes without applying them."
)
@click.pass_context
def sync_command(
    ctx: click.Context, owner: str, direction: Optional[str], dry_run: bool
) -> None:
    """
    Synchronize an owner's CRM contacts with Google Contacts.

    to_remote pushes new and locally changed contacts and clears links to
    contacts deleted remotely. from_remote pulls remote edits into linked
    contacts. both does the push first and pulls only where nothing changed
    locally.

    Examples:

        crm-sync sync --owner alice

        crm-sync sync --owner alice --direction to_remote --dry-run
    """
    logger = get_logger(__name__)
    verbose = ctx.obj["verbose"]
    sync_config: SyncConfig = ctx.obj["sync_config"]
    effective_direction = SyncDirection.parse(direction or sync_config.direction)

    mode = "Analyzing" if dry_run else "Synchronizing"
    click.echo(f"{mode} contacts for {owner} ({effective_direction.value})...")

    try:
        engine = build_engine(ctx)
        report = engine.synchronize(owner, effective_direction, dry_run=dry_run)

    except SyncInProgressError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)

    except FatalFetchError as e:
        logger.error(f"Sync failed: {e}")
        click.echo(click.style(f"\nSync failed: {e}", fg="red"), err=True)
        sys.exit(1)

    except LocalStoreError as e:
        logger.error(f"Database error: {e}")
        click.echo(click.style(f"\nDatabase error: {e}", fg="red"), err=True)
        sys.exit(1)

    click.echo("\n" + "=" * 50)
    click.echo(report.summary())
    click.echo("=" * 50)

    if dry_run:
        click.echo(
            click.style("\nDry run complete. No changes were made.", fg="yellow")
        )
        if verbose:
            show_planned_changes(report)

    if report.stats.cancelled:
        click.echo(click.style("\nSync was cancelled before finishing.", fg="yellow"))

    if report.stats.errors > 0:
        click.echo(
            click.style(
                f"\nWarning: {report.stats.errors} records failed to sync.",
                fg="yellow",
            )
        )
    elif not dry_run and not report.stats.cancelled:
        click.echo(click.style("\nSync completed successfully!", fg="green"))

    if report.failures or (verbose and report.tag_mismatches):
        show_problems(report, include_skips=verbose)


# =============================================================================
# Local Contact Commands
# =============================================================================


@cli.group("contacts")
def contacts_group() -> None:
    """
    Inspect and edit the local contact table.

    Edits made here bump the contact's updated_at, so the next sync with a
    direction that includes to_remote pushes them.
    """


@contacts_group.command("list")
@owner_option()
@click.option("--unlinked", is_flag=True, help="Only show contacts without a link.")
@click.pass_context
def contacts_list_command(ctx: click.Context, owner: str, unlinked: bool) -> None:
    """List an owner's local contacts."""
    store = open_store(ctx)
    contacts = store.list_by_owner(owner)
    if unlinked:
        contacts = [c for c in contacts if not c.is_linked]

    if not contacts:
        click.echo(f"No local contacts for {owner}.")
        return

    for contact in contacts:
        click.echo(format_contact_line(contact))
    click.echo(f"\n{len(contacts)} contacts")


@contacts_group.command("add")
@owner_option()
@click.option("--first-name", help="First name.")
@click.option("--last-name", help="Last name.")
@click.option("--email", help="Email address.")
@click.option("--phone", help="Phone number.")
@click.pass_context
def contacts_add_command(
    ctx: click.Context,
    owner: str,
    first_name: Optional[str],
    last_name: Optional[str],
    email: Optional[str],
    phone: Optional[str],
) -> None:
    """Add a local contact for an owner."""
    fields = ContactFields(
        first_name=first_name, last_name=last_name, email=email, phone=phone
    )
    if not any(fields.normalized()):
        click.echo(click.style("Error: give at least one field.", fg="red"), err=True)
        sys.exit(1)

    contact = open_store(ctx).add_contact(owner, fields)
    click.echo(click.style(f"Added contact {contact.id}", fg="green"))


@contacts_group.command("edit")
@owner_option()
@click.argument("contact_id")
@click.option("--first-name", help="First name (empty string clears it).")
@click.option("--last-name", help="Last name (empty string clears it).")
@click.option("--email", help="Email address (empty string clears it).")
@click.option("--phone", help="Phone number (empty string clears it).")
@click.pass_context
def contacts_edit_command(
    ctx: click.Context,
    owner: str,
    contact_id: str,
    first_name: Optional[str],
    last_name: Optional[str],
    email: Optional[str],
    phone: Optional[str],
) -> None:
    """Edit a local contact; unspecified fields keep their value."""
    store = open_store(ctx)
    contact = store.get_contact(contact_id)
    if contact is None or contact.owner_id != owner:
        click.echo(
            click.style(f"Error: no contact {contact_id} for {owner}.", fg="red"),
            err=True,
        )
        sys.exit(1)

    current = contact.fields
    fields = ContactFields(
        first_name=current.first_name if first_name is None else first_name,
        last_name=current.last_name if last_name is None else last_name,
        email=current.email if email is None else email,
        phone=current.phone if phone is None else phone,
    )
    if not fields.differs_from(current):
        click.echo("Nothing to change.")
        return

    updated = store.update_fields(contact_id, fields)
    click.echo(click.style("Updated contact:", fg="green"))
    click.echo(format_contact_line(updated))


@cli.command("unlink-all")
@owner_option("Owner whose cross-references to clear.")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def unlink_all_command(ctx: click.Context, owner: str, yes: bool) -> None:
    """
    Clear every cross-reference for an owner.

    Contacts are kept on both sides. The next sync re-links contacts that
    carry a source tag and pushes the rest as new contacts.
    """
    if not yes:
        click.confirm(
            f"This clears all links between {owner}'s contacts and Google "
            "Contacts.\nContinue?",
            abort=True,
        )

    count = open_store(ctx).clear_all_links(owner)
    click.echo(click.style(f"Cleared {count} links for {owner}.", fg="green"))


# =============================================================================
# Daemon Command
# =============================================================================


@cli.command("daemon")
@owner_option("Owner whose contacts to synchronize.")
@click.option(
    "--interval",
    "-i",
    default=None,
    help="Sync interval (e.g., '30m', '1h'). Defaults to config value or '1h'.",
)
@click.option(
    "--direction",
    "-d",
    type=click.Choice(DIRECTION_CHOICES, case_sensitive=False),
    default=None,
    help="Which side to write (default: config value or 'both').",
)
@click.option(
    "--no-initial-sync",
    is_flag=True,
    help="Wait one interval before the first sync.",
)
@click.pass_context
def daemon_command(
    ctx: click.Context,
    owner: str,
    interval: Optional[str],
    direction: Optional[str],
    no_initial_sync: bool,
) -> None:
    """
    Run sync periodically in the foreground.

    Stops on SIGINT/SIGTERM; a run in progress is cancelled before its next
    record.

    Example:

        crm-sync daemon --owner alice --interval 30m
    """
    logger = get_logger(__name__)
    sync_config: SyncConfig = ctx.obj["sync_config"]
    effective_direction = SyncDirection.parse(direction or sync_config.direction)

    try:
        interval_seconds = parse_interval(interval or sync_config.daemon_interval)
    except ValueError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)

    try:
        engine = build_engine(ctx)
    except LocalStoreError as e:
        click.echo(click.style(f"Database error: {e}", fg="red"), err=True)
        sys.exit(1)

    scheduler = DaemonScheduler(
        interval=interval_seconds, run_immediately=not no_initial_sync
    )

    def sync_callback(stop_event) -> bool:
        try:
            report = engine.synchronize(
                owner, effective_direction, cancel_event=stop_event
            )
        except (FatalFetchError, SyncInProgressError) as e:
            logger.error(f"Sync failed: {e}")
            return False
        return report.stats.errors == 0

    scheduler.set_sync_callback(sync_callback)

    click.echo(
        f"Starting daemon for {owner} every {interval_seconds}s "
        f"({effective_direction.value}). Press Ctrl+C to stop."
    )
    scheduler.run()

    stats = scheduler.stats
    click.echo(
        click.style(
            f"\nDaemon stopped after {stats.sync_count} runs "
            f"({stats.sync_error_count} with errors).",
            fg="green",
        )
    )
