"""Markdown build reports."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Optional

from win2cloud.pipeline.state import PHASE_ORDER
from win2cloud.utils.logging import get_logger

if TYPE_CHECKING:
    from win2cloud.pipeline.build import BuildResult

logger = get_logger(__name__)


def human_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TiB"


def table_cell(text: str, limit: int = 120) -> str:
    """Flatten free text (tool stderr) into one Markdown table cell."""
    cell = " ".join(text.split()).replace("|", "\\|")
    return cell[:limit]


def generate_report(result: "BuildResult", output_path: Path | None = None) -> str:
    """Generate a Markdown build report.

    Args:
        result: Finished (or failed) build
        output_path: Optional path to write the report file

    Returns:
        Report as Markdown string
    """
    state = result.state
    lines = [
        f"# Build Report — `{state.vm_name}`",
        "",
        f"**Date:** {state.started_at.strftime('%Y-%m-%d %H:%M')}",
        f"**Status:** {state.current_phase.value.upper()}",
        f"**Elapsed:** {state.elapsed_s / 60:.1f} min",
        f"**Working disk:** `{state.working_disk_path}`",
        "",
    ]

    if result.error:
        last = state.last_successful_phase.label if state.last_successful_phase else "none"
        lines += [
            "## Failure",
            "",
            f"- Failed phase: {result.failed_phase}",
            f"- Last successful phase: {last}",
            f"- Error: {' '.join(result.error.split())}",
            "",
        ]

    lines += [
        "## Phases",
        "",
        "| Phase | Result | Duration |",
        "|-------|--------|----------|",
    ]
    for phase in PHASE_ORDER:
        timing = state.timings.get(phase)
        if phase in state.executed_phases:
            lines.append(f"| {phase.label} | done | {timing.duration_s:.0f}s |")
        elif phase in state.skipped_phases:
            lines.append(f"| {phase.label} | skipped | — |")
        elif timing:
            lines.append(f"| {phase.label} | failed | {timing.duration_s:.0f}s |")
        else:
            lines.append(f"| {phase.label} | not run | — |")
    lines.append("")

    if state.conversions:
        lines += [
            "## Artifacts",
            "",
            "| Format | Path | Size | Duration |",
            "|--------|------|------|----------|",
        ]
        for conv in state.conversions:
            lines.append(f"| {conv.format} | `{conv.path}` | {human_size(conv.size)} | {conv.duration:.0f}s |")
        lines.append("")

    if state.compressions:
        lines += [
            "## Compressed Artifacts",
            "",
            "| Path | Scheme | Size | Saved |",
            "|------|--------|------|-------|",
        ]
        for comp in state.compressions:
            lines.append(
                f"| `{comp.path}` | {comp.scheme} ({comp.mechanism}) | "
                f"{human_size(comp.size)} | {comp.ratio:.1%} |"
            )
        lines.append("")

    if state.failures:
        lines += [
            "## Failed Artifacts",
            "",
            "| Component | Format | Error |",
            "|-----------|--------|-------|",
        ]
        for failure in state.failures:
            lines.append(f"| {failure.component} | {failure.format} | {table_cell(failure.error)} |")
        lines.append("")

    report = "\n".join(lines)

    if output_path:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(report)
        logger.info(f"Report saved to {output_path}")

    return report
