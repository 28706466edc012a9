"""
Policy Enforcer for the Reconciliation Engine.

Evaluates account and password policies against a candidate record and
raises PolicyViolation when the record does not satisfy them.
"""

import logging
import re
from typing import Callable, List, Optional, Union

from pydantic import BaseModel, Field, SecretStr

from ..exceptions import PolicyViolation, PolicyViolationType
from ..models import AnyRecord, UserRecord

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_PATTERN = r"^[0-9a-zA-Z\-_@. ]+$"

Suspender = Callable[[UserRecord], None]


class AccountPolicySpec(BaseModel):
    """Constraints on usernames and login failures. Zero means unbounded."""
    min_length: int = Field(0, ge=0)
    max_length: int = Field(0, ge=0)
    pattern: str = DEFAULT_ACCOUNT_PATTERN
    all_upper_case: bool = False
    all_lower_case: bool = False
    words_not_permitted: List[str] = Field(default_factory=list)
    prefixes_not_permitted: List[str] = Field(default_factory=list)
    suffixes_not_permitted: List[str] = Field(default_factory=list)
    schemas_not_permitted: List[str] = Field(default_factory=list)
    max_authentication_attempts: int = Field(0, ge=0)


class PasswordPolicySpec(BaseModel):
    """Constraints on passwords. Zero means unbounded."""
    min_length: int = Field(0, ge=0)
    max_length: int = Field(0, ge=0)
    history_length: int = Field(0, ge=0)
    allow_null_password: bool = True
    pattern: Optional[str] = None
    digit_required: bool = False
    lowercase_required: bool = False
    uppercase_required: bool = False
    non_alphanumeric_required: bool = False
    words_not_permitted: List[str] = Field(default_factory=list)
    prefixes_not_permitted: List[str] = Field(default_factory=list)
    suffixes_not_permitted: List[str] = Field(default_factory=list)
    schemas_not_permitted: List[str] = Field(default_factory=list)


PolicySpec = Union[AccountPolicySpec, PasswordPolicySpec]


class PolicyEnforcer:
    """
    Validates records against account and password policy specs.

    Args:
        suspender: Called with a user whose failed logins exceed the account
            policy threshold, unless that user is already suspended
    """

    def __init__(self, suspender: Optional[Suspender] = None):
        self.suspender = suspender

    def evaluate(self, policy: PolicySpec, record: AnyRecord) -> PolicySpec:
        """
        Build the effective spec for a record.

        The record's values for each not-permitted schema become forbidden
        words; for password policies so do the last history_length passwords.
        """
        words = list(policy.words_not_permitted)
        for schema in policy.schemas_not_permitted:
            for value in record.get_values(schema):
                if value and str(value) not in words:
                    words.append(str(value))

        if isinstance(policy, PasswordPolicySpec) and policy.history_length > 0 \
                and isinstance(record, UserRecord):
            for previous in record.password_history[-policy.history_length:]:
                if previous not in words:
                    words.append(previous)

        return policy.model_copy(update={"words_not_permitted": words})

    def _check_common(self, value: str, spec: PolicySpec, label: str) -> None:
        if spec.min_length > 0 and len(value) < spec.min_length:
            raise PolicyViolation(PolicyViolationType.MIN_LENGTH,
                                  f"{label} shorter than {spec.min_length} characters")
        if spec.max_length > 0 and len(value) > spec.max_length:
            raise PolicyViolation(PolicyViolationType.MAX_LENGTH,
                                  f"{label} longer than {spec.max_length} characters")
        if spec.pattern and not re.match(spec.pattern, value):
            raise PolicyViolation(PolicyViolationType.PATTERN, f"{label} does not match {spec.pattern}")

    def _check_words(self, value: str, spec: PolicySpec, label: str) -> None:
        lowered = value.lower()
        for word in spec.words_not_permitted:
            if word and word.lower() in lowered:
                raise PolicyViolation(PolicyViolationType.FORBIDDEN_WORD,
                                      f"{label} contains a word that is not permitted")
        for prefix in spec.prefixes_not_permitted:
            if prefix and value.startswith(prefix):
                raise PolicyViolation(PolicyViolationType.PREFIX,
                                      f"{label} starts with '{prefix}'")
        for suffix in spec.suffixes_not_permitted:
            if suffix and value.endswith(suffix):
                raise PolicyViolation(PolicyViolationType.SUFFIX,
                                      f"{label} ends with '{suffix}'")

    def enforce_account(self, spec: AccountPolicySpec, record: AnyRecord) -> None:
        if not isinstance(record, UserRecord):
            return

        username = record.username
        self._check_common(username, spec, f"Username '{username}'")
        if spec.all_upper_case and username != username.upper():
            raise PolicyViolation(PolicyViolationType.CASE, f"Username '{username}' must be upper case")
        if spec.all_lower_case and username != username.lower():
            raise PolicyViolation(PolicyViolationType.CASE, f"Username '{username}' must be lower case")
        self._check_words(username, spec, f"Username '{username}'")

        if spec.max_authentication_attempts > 0 and record.failed_logins > spec.max_authentication_attempts:
            if self.suspender is not None and not record.suspended:
                logger.warning(f"Suspending {username} after {record.failed_logins} failed logins")
                self.suspender(record)
            raise PolicyViolation(
                PolicyViolationType.MAX_FAILED_LOGINS,
                f"{username} exceeded {spec.max_authentication_attempts} failed logins",
            )

    def enforce_password(self, spec: PasswordPolicySpec, password: Optional[Union[str, SecretStr]]) -> None:
        if isinstance(password, SecretStr):
            password = password.get_secret_value()
        if not password:
            if not spec.allow_null_password:
                raise PolicyViolation(PolicyViolationType.NULL_PASSWORD, "Password is required")
            return

        self._check_common(password, spec, "Password")
        if spec.digit_required and not any(c.isdigit() for c in password):
            raise PolicyViolation(PolicyViolationType.CHARACTER_CLASS, "Password needs a digit")
        if spec.lowercase_required and not any(c.islower() for c in password):
            raise PolicyViolation(PolicyViolationType.CHARACTER_CLASS, "Password needs a lowercase letter")
        if spec.uppercase_required and not any(c.isupper() for c in password):
            raise PolicyViolation(PolicyViolationType.CHARACTER_CLASS, "Password needs an uppercase letter")
        if spec.non_alphanumeric_required and password.isalnum():
            raise PolicyViolation(PolicyViolationType.CHARACTER_CLASS, "Password needs a non alphanumeric character")
        self._check_words(password, spec, "Password")

    def enforce(self, spec: PolicySpec, record: AnyRecord,
                password: Optional[Union[str, SecretStr]] = None) -> None:
        """
        Enforce an effective spec on a record.

        Raises:
            PolicyViolation: on the first constraint not satisfied
        """
        if isinstance(spec, PasswordPolicySpec):
            if password is None and isinstance(record, UserRecord):
                password = record.password
            self.enforce_password(spec, password)
        else:
            self.enforce_account(spec, record)

    def check(self, record: AnyRecord, account_policy: Optional[AccountPolicySpec] = None,
              password_policy: Optional[PasswordPolicySpec] = None,
              password: Optional[Union[str, SecretStr]] = None) -> None:
        """Evaluate then enforce whichever policies apply."""
        if account_policy is not None:
            self.enforce(self.evaluate(account_policy, record), record)
        if password_policy is not None and isinstance(record, UserRecord):
            self.enforce(self.evaluate(password_policy, record), record, password)
