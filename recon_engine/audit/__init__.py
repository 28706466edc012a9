"""
Audit Package for the Reconciliation Engine.
"""

from .report_sink import JsonlReportSink, ReportSink

__all__ = ["JsonlReportSink", "ReportSink"]
