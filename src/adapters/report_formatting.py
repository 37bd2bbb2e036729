"""Console report formatting for the CLI.

Keeping formatting here prevents drift between commands and keeps output
consistent regardless of which operation produced it.
"""

from __future__ import annotations

import json
from typing import Any, Mapping

from core.media_group_sync import SiblingStatus, SyncResult
from core.models import AnalyzedContent
from core.processor import ProcessingOutcome
from core.recovery import SweepReport

DIVIDER = "──────────────"


def content_as_json(content: AnalyzedContent) -> str:
    return json.dumps(content.to_dict(), indent=2, ensure_ascii=False)


def format_sync_result(result: SyncResult) -> str:
    """Return a human-readable summary of a group sync."""

    if not result.success:
        return "\n".join(
            [
                f"Group:  {result.group_id}",
                "Status: no source",
                f"Reason: {result.error}",
            ]
        )

    lines = [
        f"Group:   {result.group_id}",
        f"Source:  {result.source_id}",
        f"Updated: {result.updated_count}",
        DIVIDER,
    ]
    for sibling in result.sibling_results:
        line = f"{sibling.message_id}: {sibling.status.value}"
        if sibling.status is SiblingStatus.FAILED:
            kind = sibling.error_kind.value if sibling.error_kind else "unknown"
            line = f"{line} ({kind}) {sibling.error}"
        lines.append(line)
    if result.is_partial:
        lines.extend([DIVIDER, f"Partial sync: {len(result.failed)} write(s) failed"])
    return "\n".join(lines)


def format_outcome(outcome: ProcessingOutcome) -> str:
    lines = [f"Message: {outcome.message_id}", f"State:   {outcome.state.value}"]
    if outcome.skipped_reason:
        lines.append(f"Skipped: {outcome.skipped_reason}")
    if outcome.analyzed_content is not None:
        metadata = outcome.analyzed_content.parsing_metadata
        lines.append(f"Confidence: {metadata.confidence}")
        if metadata.fallbacks_used:
            lines.append(f"Fallbacks:  {', '.join(metadata.fallbacks_used)}")
        if metadata.needs_escalation:
            lines.append("Needs escalation: yes")
    if outcome.group_sync is not None:
        lines.extend([DIVIDER, format_sync_result(outcome.group_sync)])
    return "\n".join(lines)


def format_sweep(report: SweepReport) -> str:
    lines = [
        f"Stalled -> error:  {len(report.stalled_ids)}",
        f"Error -> pending:  {len(report.reset_ids)}",
        f"Retry limit hit:   {len(report.exhausted_ids)}",
        f"Reprocessed:       {len(report.reprocessed)}",
        f"Reprocess failed:  {len(report.failed_ids)}",
        f"Groups re-synced:  {len(report.group_syncs)}",
    ]
    for result in report.group_syncs:
        lines.extend([DIVIDER, format_sync_result(result)])
    return "\n".join(lines)


def format_stats(stats: dict[str, Any]) -> str:
    lines = [f"Total messages: {stats['total_messages']}"]
    for state, count in stats["by_state"].items():
        lines.append(f"  {state}: {count}")
    lines.extend(
        [
            f"With caption:          {stats['with_caption']}",
            f"With analyzed content: {stats['with_analyzed_content']}",
            f"In a media group:      {stats['with_media_group_id']}",
        ]
    )
    return "\n".join(lines)


def format_ingest(counts: Mapping[str, int]) -> str:
    return "\n".join(
        [
            f"Added:     {counts.get('added', 0)}",
            f"Processed: {counts.get('processed', 0)}",
            f"Edited:    {counts.get('edited', 0)}",
            f"Unchanged: {counts.get('unchanged', 0)}",
            f"Ignored:   {counts.get('ignored', 0)}",
            f"Failed:    {counts.get('failed', 0)}",
        ]
    )
