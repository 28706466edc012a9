"""
Exception hierarchy for the Reconciliation Engine.

Record-level errors (policy violations, mapping errors, a single resource's
connector error during push) are captured into provisioning reports.
Stream-level errors surface to the job manager as JobExecutionError.
"""

from enum import Enum
from typing import Any, List, Optional


class ReconEngineError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(ReconEngineError):
    """Invalid or missing configuration (unknown resource, policy, connector key)."""


class ConnectorErrorCategory(str, Enum):
    """Failure categories for remote connector I/O."""
    CONNECT = "CONNECT"
    AUTH = "AUTH"
    NOT_FOUND = "NOT_FOUND"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    TIMEOUT = "TIMEOUT"
    UNKNOWN = "UNKNOWN"


class ConnectorError(ReconEngineError):
    """Typed failure raised by any connector operation."""

    def __init__(self, category: ConnectorErrorCategory, message: str = "",
                 resource: Optional[str] = None):
        self.category = ConnectorErrorCategory(category)
        self.message = message
        self.resource = resource
        super().__init__(f"[{self.category.value}] {message}")


class PoolExhaustedError(ConnectorError):
    """No connector instance became available within maxWait."""

    def __init__(self, message: str, resource: Optional[str] = None):
        super().__init__(ConnectorErrorCategory.TIMEOUT, message, resource)


class PolicyViolationType(str, Enum):
    """Kinds of account/password policy violations."""
    MIN_LENGTH = "MIN_LENGTH"
    MAX_LENGTH = "MAX_LENGTH"
    FORBIDDEN_WORD = "FORBIDDEN_WORD"
    CASE = "CASE"
    PATTERN = "PATTERN"
    PREFIX = "PREFIX"
    SUFFIX = "SUFFIX"
    CHARACTER_CLASS = "CHARACTER_CLASS"
    NULL_PASSWORD = "NULL_PASSWORD"
    MAX_FAILED_LOGINS = "MAX_FAILED_LOGINS"


class PolicyViolation(ReconEngineError):
    """A candidate record does not satisfy the effective policy."""

    def __init__(self, violation_type: PolicyViolationType, message: str):
        self.violation_type = PolicyViolationType(violation_type)
        self.message = message
        super().__init__(f"{self.violation_type.value}: {message}")


class MappingError(ReconEngineError):
    """A mandatory mapped attribute is missing or cannot be translated."""


class CorrelationAmbiguityError(ReconEngineError):
    """More than one internal record matched an inbound delta."""

    def __init__(self, uid: str, matches: List[Any]):
        self.uid = uid
        self.matches = matches
        super().__init__(f"More than one match found for {uid}: {len(matches)} matches")


class InvalidSearchCondError(ReconEngineError):
    """Evaluation was attempted on a condition tree that is not valid."""


class JobExecutionError(ReconEngineError):
    """A job could not run to completion (e.g. the sync stream failed to open)."""


class JobInterruptTimeoutError(ReconEngineError):
    """Interrupt retries were exhausted; the job is considered orphaned."""

    def __init__(self, job_key: str, attempts: int):
        self.job_key = job_key
        self.attempts = attempts
        super().__init__(f"Job {job_key} still running after {attempts} interrupt attempts")
