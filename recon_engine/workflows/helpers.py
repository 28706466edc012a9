"""
Workflow Helper Functions for the Reconciliation Engine.

Utility functions for summarizing provisioning reports and rendering the
textual run report according to a resource's trace level.
"""

import logging
from collections import OrderedDict
from typing import Dict, List

from ..models import ProvisioningReport, ReportStatus, ResourceOperation, TraceLevel

logger = logging.getLogger(__name__)

DRY_RUN_BANNER = "==> Dry run only, no modifications were made <=="
INTERRUPTED_BANNER = "==> Execution was interrupted <=="


def summarize(reports: List[ProvisioningReport]) -> Dict[str, Dict[str, int]]:
    """
    Count report entries per any type.

    Args:
        reports: Provisioning reports of a run

    Returns:
        Mapping of any type to counters keyed ``<operation>_<status>``
    """
    summary: Dict[str, Dict[str, int]] = OrderedDict()
    for report in reports:
        counters = summary.setdefault(report.any_type or "UNKNOWN", {})
        counter = f"{report.operation.value.lower()}_{report.status.value.lower()}"
        counters[counter] = counters.get(counter, 0) + 1
    return summary


def _summary_lines(reports: List[ProvisioningReport]) -> List[str]:
    lines = []
    for any_type, counters in summarize(reports).items():
        def count(operation: ResourceOperation, status: ReportStatus) -> int:
            return counters.get(f"{operation.value.lower()}_{status.value.lower()}", 0)

        parts = []
        for operation in (ResourceOperation.CREATE, ResourceOperation.UPDATE, ResourceOperation.DELETE):
            parts.append(f"{operation.value.lower()}d {count(operation, ReportStatus.SUCCESS)}"
                         f" (failed {count(operation, ReportStatus.FAILURE)})")
        ignored = sum(v for k, v in counters.items() if k.endswith("_ignore"))
        no_operation = count(ResourceOperation.NONE, ReportStatus.SUCCESS)
        failed_other = count(ResourceOperation.NONE, ReportStatus.FAILURE)
        parts.append(f"no operation {no_operation} (failed {failed_other})")
        parts.append(f"ignored {ignored}")
        lines.append(f"{any_type}: " + ", ".join(parts))
    return lines


def _detail_line(report: ProvisioningReport) -> str:
    line = (f"[{report.status.value}] {report.operation.value} {report.any_type} "
            f"{report.name or ''} (uid={report.uid_value}, key={report.key})")
    if report.message:
        line += f": {report.message}"
    return line


def render_report(reports: List[ProvisioningReport], trace_level: TraceLevel,
                  dry_run: bool = False, interrupted: bool = False) -> str:
    """
    Render the textual run report.

    NONE renders only the banners; SUMMARY adds per any type counters;
    FAILURES adds one line per failed entry; ALL adds one line per entry.
    """
    lines = []
    if dry_run:
        lines.append(DRY_RUN_BANNER)
        lines.append("")
    if interrupted:
        lines.append(INTERRUPTED_BANNER)
        lines.append("")

    if trace_level == TraceLevel.NONE:
        return "\n".join(lines)

    lines.extend(_summary_lines(reports))

    if trace_level == TraceLevel.FAILURES:
        failures = [r for r in reports if r.status == ReportStatus.FAILURE]
        if failures:
            lines.append("")
            lines.append("Failures:")
            lines.extend(_detail_line(r) for r in failures)
    elif trace_level == TraceLevel.ALL and reports:
        lines.append("")
        lines.extend(_detail_line(r) for r in reports)

    return "\n".join(lines)


def has_failures(reports: List[ProvisioningReport]) -> bool:
    return any(r.status == ReportStatus.FAILURE for r in reports)
