"""CLI output formatting functions.

This module contains functions for displaying planned changes, per-record
problems, local contacts and run history on the command line.
"""

from typing import TYPE_CHECKING, Any, Optional

import click

from crm_sync.sync.applier import SyncOutcome
from crm_sync.sync.planner import SyncAction

if TYPE_CHECKING:
    from crm_sync.sync.applier import ApplyResult
    from crm_sync.sync.contact import LocalContact
    from crm_sync.sync.engine import SyncReport

# Marker shown before each planned action
ACTION_SYMBOLS = {
    SyncAction.CREATE_REMOTE: "+",
    SyncAction.CREATE_LOCAL: "+",
    SyncAction.UPDATE_REMOTE: "~",
    SyncAction.UPDATE_LOCAL: "~",
    SyncAction.LINK: "=",
    SyncAction.UNLINK: "-",
}

ACTION_HEADINGS = {
    SyncAction.CREATE_REMOTE: "Contacts to create in Google",
    SyncAction.UPDATE_REMOTE: "Contacts to update in Google",
    SyncAction.CREATE_LOCAL: "Contacts to create locally",
    SyncAction.UPDATE_LOCAL: "Contacts to update locally",
    SyncAction.LINK: "Contacts to re-link by source tag",
    SyncAction.UNLINK: "Links to clear (remote contact gone)",
}


def describe_result(result: "ApplyResult") -> str:
    """Short label for the record an apply result is about."""
    decision = result.decision
    if decision.local is not None:
        name = decision.local.display_name or decision.local.email or ""
    elif decision.remote is not None:
        name = decision.remote.fields.display_name or decision.remote.primary_email
    else:
        name = ""
    return f"{name} ({decision.subject})" if name else decision.subject


def show_planned_changes(report: "SyncReport", limit: int = 10) -> None:
    """
    Display the changes a dry run would make, grouped by action.

    Args:
        report: Dry-run report whose results hold the planned decisions
        limit: Maximum records shown per group
    """
    click.echo("\n=== Planned Changes ===")

    shown = False
    for action, heading in ACTION_HEADINGS.items():
        results = [r for r in report.results if r.decision.action is action]
        if not results:
            continue
        shown = True
        click.echo(f"\n{heading}:")
        for result in results[:limit]:
            click.echo(f"  {ACTION_SYMBOLS[action]} {describe_result(result)}")
        if len(results) > limit:
            click.echo(f"  ... and {len(results) - limit} more")

    if not shown:
        click.echo("\nNo changes needed.")


def show_problems(
    report: "SyncReport", include_skips: bool = False, limit: int = 10
) -> None:
    """
    Display failed records and, optionally, records skipped for a tag mismatch.

    Args:
        report: Report to inspect
        include_skips: Also list tag-mismatch skips
        limit: Maximum records shown per group
    """
    failures = report.failures
    if failures:
        click.echo(click.style("\nFailed records:", fg="red"))
        for result in failures[:limit]:
            kind = result.error_kind.value if result.error_kind else "error"
            click.echo(f"  ! {describe_result(result)} [{kind}] {result.message}")
        if len(failures) > limit:
            click.echo(f"  ... and {len(failures) - limit} more")

    mismatches = report.tag_mismatches if include_skips else []
    if mismatches:
        click.echo(click.style("\nSkipped (source tag mismatch):", fg="yellow"))
        for result in mismatches[:limit]:
            click.echo(f"  ? {describe_result(result)} {result.decision.reason}")
        if len(mismatches) > limit:
            click.echo(f"  ... and {len(mismatches) - limit} more")


def format_contact_line(contact: "LocalContact") -> str:
    """Format one local contact as a single line for listings."""
    name = contact.display_name or "(no name)"
    details = ", ".join(v for v in (contact.email, contact.phone) if v)
    link = (
        click.style(f"-> {contact.remote_resource_id}", fg="green")
        if contact.is_linked
        else click.style("unlinked", fg="yellow")
    )
    line = f"{contact.id}  {name}"
    if details:
        line += f" <{details}>"
    return f"{line}  {link}"


def format_last_run(run: Optional[dict[str, Any]]) -> str:
    """Format a run history row from ContactStore.get_last_run()."""
    if not run:
        return "Never"

    finished = run["finished_at"]
    when = finished.strftime("%Y-%m-%d %H:%M:%S UTC") if finished else "unknown"
    counts = ", ".join(
        f"{run[outcome.value]} {outcome.value}"
        for outcome in (
            SyncOutcome.CREATED,
            SyncOutcome.UPDATED,
            SyncOutcome.SKIPPED,
            SyncOutcome.UNLINKED,
        )
    )
    text = f"{when} ({run['direction']}): {counts}, {run['errors']} errors"
    if run["dry_run"]:
        text += " [dry run]"
    if run["cancelled"]:
        text += " [cancelled]"
    return text
