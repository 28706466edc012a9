"""
Run Report Sink.

This module stores finished pull/push run reports for later search. The
engine only produces reports; the sink owns their storage.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

from pydantic import ValidationError

from ..models import RunReport, utcnow

logger = logging.getLogger(__name__)


class ReportSink(ABC):
    """Accepts finished run reports."""

    @abstractmethod
    def store(self, run: RunReport) -> None:
        pass

    @abstractmethod
    def get_runs(self, task_key: Optional[str] = None, domain: Optional[str] = None,
                 since: Optional[datetime] = None, limit: int = 20) -> List[RunReport]:
        pass


class JsonlReportSink(ReportSink):
    """
    Appends one JSON line per run to a daily file under ``report_dir``.
    """

    def __init__(self, report_dir: Union[str, Path] = "reports"):
        """
        Initialize the report sink.

        Args:
            report_dir: Directory to store run reports
        """
        self.report_dir = Path(report_dir)
        self.report_dir.mkdir(parents=True, exist_ok=True)

    def store(self, run: RunReport) -> None:
        date_str = (run.ended_at or utcnow()).strftime("%Y-%m-%d")
        report_file = self.report_dir / f"runs_{date_str}.jsonl"

        with open(report_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(run.model_dump(mode="json")) + "\n")

        logger.info(f"Stored {run.task_type.value} run report for {run.domain}/{run.task_key} "
                    f"({len(run.reports)} entries)")

    def get_runs(self, task_key: Optional[str] = None, domain: Optional[str] = None,
                 since: Optional[datetime] = None, limit: int = 20) -> List[RunReport]:
        """
        Retrieve stored runs, most recent first.

        Args:
            task_key: Filter by task
            domain: Filter by domain
            since: Only runs started at or after this time
            limit: Maximum number of runs to return

        Returns:
            List of matching RunReports
        """
        results: List[RunReport] = []

        for report_file in sorted(self.report_dir.glob("runs_*.jsonl"), reverse=True):
            if len(results) >= limit:
                break

            with open(report_file, encoding="utf-8") as f:
                lines = f.readlines()

            for line in reversed(lines):
                if len(results) >= limit:
                    break
                if not line.strip():
                    continue
                try:
                    run = RunReport.model_validate_json(line)
                except ValidationError as e:
                    logger.warning(f"Skipping unreadable run report in {report_file}: {e}")
                    continue

                if task_key and run.task_key != task_key:
                    continue
                if domain and run.domain != domain:
                    continue
                if since and run.started_at < since:
                    continue
                results.append(run)

        return results
