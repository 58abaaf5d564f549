"""
Human-readable rendering of sync results.

The structured data (SyncStatistics, SyncReport) is what callers act on;
these functions turn it into the text shown to operators.
"""

from sdesync.cache.backup import SyncReport
from sdesync.cache.models import SdeItem, SyncStatistics

# Items listed per section before the rest is summarized
MAX_LISTED_ITEMS = 25


def _item_lines(items: list[SdeItem]) -> list[str]:
    lines = [f"- {item.id}: {item.status}" + (f" ({item.value})" if item.value else "")
             for item in items[:MAX_LISTED_ITEMS]]
    if len(items) > MAX_LISTED_ITEMS:
        lines.append(f"- ... and {len(items) - MAX_LISTED_ITEMS} more")
    return lines


def format_sync_message(stats: SyncStatistics, verbose: bool = False) -> str:
    """Render a bulk sync result as a sectioned text block."""
    sections: list[str] = []

    summary = [
        "## Summary",
        stats.message or "Sync finished",
        f"Fact references found: {stats.found}",
        f"Unique facts: {stats.unique}",
        f"Values updated: {stats.updated}",
        f"Values already current: {stats.without_update}",
        f"Caches written: {stats.documents_written}",
    ]
    if stats.cancelled:
        summary.append("The run was cancelled; some caches were not written.")
    sections.append("\n".join(summary))

    if stats.sync_error:
        sections.append("\n".join(["## Errors"] + _item_lines(stats.sync_error)))

    if stats.sync_warning:
        sections.append("\n".join(["## Warnings"] + _item_lines(stats.sync_warning)))

    if stats.log_error:
        sections.append("\n".join(["## Error log"] + [f"- {line}" for line in stats.log_error]))

    if verbose:
        if stats.log_warning:
            sections.append("\n".join(["## Warning log"] + [f"- {line}" for line in stats.log_warning]))
        if stats.error_by_document or stats.warning_by_document:
            lines = ["## Problems by document"]
            refs = sorted(set(stats.error_by_document) | set(stats.warning_by_document))
            for ref in refs:
                errors = len(stats.error_by_document.get(ref, []))
                warnings = len(stats.warning_by_document.get(ref, []))
                lines.append(f"- {ref}: {errors} errors, {warnings} warnings")
            sections.append("\n".join(lines))

    return "\n\n".join(sections)


def format_sync_report(report: SyncReport) -> str:
    """Render a backup-vs-live diff."""
    if not report.documents:
        return f"No changes in project {report.project_id}"

    sections: list[str] = [f"## Changes in {report.project_id} ({report.change_count})"]
    for diff in report.documents:
        lines = [f"### {diff.data_reference}"]
        for change in diff.changes:
            old = "<missing>" if change.old_value is None else repr(change.old_value)
            new = "<missing>" if change.new_value is None else repr(change.new_value)
            line = f"- {change.fact_id} [{change.lang}]: {old} -> {new}"
            if change.old_status != change.new_status:
                line += f" (status {change.old_status} -> {change.new_status})"
            lines.append(line)
        sections.append("\n".join(lines))
    return "\n\n".join(sections)
