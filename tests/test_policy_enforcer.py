"""
Tests for the PolicyEnforcer.
"""

from unittest.mock import Mock

import pytest

from recon_engine.engine import AccountPolicySpec, PasswordPolicySpec, PolicyEnforcer
from recon_engine.exceptions import PolicyViolation, PolicyViolationType
from recon_engine.models import build_group, build_user


class TestAccountPolicy:
    """Test cases for account policy enforcement."""

    @pytest.fixture
    def enforcer(self):
        return PolicyEnforcer()

    def test_valid_username_passes(self, enforcer):
        spec = AccountPolicySpec(min_length=3, max_length=20)
        enforcer.check(build_user("jdoe"), account_policy=spec)

    def test_min_length_checked_before_pattern(self, enforcer):
        spec = AccountPolicySpec(min_length=5)

        with pytest.raises(PolicyViolation) as exc_info:
            enforcer.check(build_user("j!"), account_policy=spec)

        assert exc_info.value.violation_type == PolicyViolationType.MIN_LENGTH

    def test_max_length(self, enforcer):
        with pytest.raises(PolicyViolation) as exc_info:
            enforcer.check(build_user("averyverylongname"), account_policy=AccountPolicySpec(max_length=8))
        assert exc_info.value.violation_type == PolicyViolationType.MAX_LENGTH

    def test_default_pattern_rejects_symbols(self, enforcer):
        with pytest.raises(PolicyViolation) as exc_info:
            enforcer.check(build_user("j$doe"), account_policy=AccountPolicySpec())
        assert exc_info.value.violation_type == PolicyViolationType.PATTERN

    def test_case_constraint(self, enforcer):
        with pytest.raises(PolicyViolation) as exc_info:
            enforcer.check(build_user("JDoe"), account_policy=AccountPolicySpec(all_lower_case=True))
        assert exc_info.value.violation_type == PolicyViolationType.CASE

    def test_prefix_and_suffix(self, enforcer):
        with pytest.raises(PolicyViolation) as exc_info:
            enforcer.check(build_user("adm_jdoe"), account_policy=AccountPolicySpec(prefixes_not_permitted=["adm_"]))
        assert exc_info.value.violation_type == PolicyViolationType.PREFIX

        with pytest.raises(PolicyViolation) as exc_info:
            enforcer.check(build_user("jdoe_tmp"), account_policy=AccountPolicySpec(suffixes_not_permitted=["_tmp"]))
        assert exc_info.value.violation_type == PolicyViolationType.SUFFIX

    def test_schema_values_become_forbidden_words(self, enforcer):
        user = build_user("john42", plain_attrs={"firstname": ["John"]})
        spec = AccountPolicySpec(schemas_not_permitted=["firstname"])

        effective = enforcer.evaluate(spec, user)
        assert "John" in effective.words_not_permitted
        assert spec.words_not_permitted == []

        with pytest.raises(PolicyViolation) as exc_info:
            enforcer.check(user, account_policy=spec)
        assert exc_info.value.violation_type == PolicyViolationType.FORBIDDEN_WORD

    def test_groups_are_not_subject_to_account_policy(self, enforcer):
        enforcer.check(build_group("x"), account_policy=AccountPolicySpec(min_length=5))

    def test_failed_logins_suspend_user(self):
        suspender = Mock()
        enforcer = PolicyEnforcer(suspender=suspender)
        user = build_user("jdoe")
        user.failed_logins = 4

        with pytest.raises(PolicyViolation) as exc_info:
            enforcer.check(user, account_policy=AccountPolicySpec(max_authentication_attempts=3))

        assert exc_info.value.violation_type == PolicyViolationType.MAX_FAILED_LOGINS
        suspender.assert_called_once_with(user)

    def test_already_suspended_user_is_not_suspended_again(self):
        suspender = Mock()
        enforcer = PolicyEnforcer(suspender=suspender)
        user = build_user("jdoe")
        user.failed_logins = 4
        user.suspended = True

        with pytest.raises(PolicyViolation):
            enforcer.check(user, account_policy=AccountPolicySpec(max_authentication_attempts=3))

        suspender.assert_not_called()


class TestPasswordPolicy:
    """Test cases for password policy enforcement."""

    @pytest.fixture
    def enforcer(self):
        return PolicyEnforcer()

    def test_null_password_allowed_by_default(self, enforcer):
        enforcer.check(build_user("jdoe"), password_policy=PasswordPolicySpec(min_length=8))

    def test_null_password_rejected(self, enforcer):
        with pytest.raises(PolicyViolation) as exc_info:
            enforcer.check(build_user("jdoe"), password_policy=PasswordPolicySpec(allow_null_password=False))
        assert exc_info.value.violation_type == PolicyViolationType.NULL_PASSWORD

    def test_record_password_is_used_when_none_given(self, enforcer):
        with pytest.raises(PolicyViolation) as exc_info:
            enforcer.check(build_user("jdoe", password="short"), password_policy=PasswordPolicySpec(min_length=8))
        assert exc_info.value.violation_type == PolicyViolationType.MIN_LENGTH

    @pytest.mark.parametrize("flag,password", [
        ("digit_required", "NoDigitsHere"),
        ("lowercase_required", "UPPER123"),
        ("uppercase_required", "lower123"),
        ("non_alphanumeric_required", "Alnum123"),
    ])
    def test_character_classes(self, enforcer, flag, password):
        spec = PasswordPolicySpec(**{flag: True})

        with pytest.raises(PolicyViolation) as exc_info:
            enforcer.check(build_user("jdoe"), password_policy=spec, password=password)

        assert exc_info.value.violation_type == PolicyViolationType.CHARACTER_CLASS

    def test_username_not_permitted_in_password(self, enforcer):
        spec = PasswordPolicySpec(schemas_not_permitted=["username"])

        with pytest.raises(PolicyViolation) as exc_info:
            enforcer.check(build_user("jdoe"), password_policy=spec, password="myJDOE2024!")

        assert exc_info.value.violation_type == PolicyViolationType.FORBIDDEN_WORD

    def test_password_history(self, enforcer):
        user = build_user("jdoe")
        user.password_history = ["Oldest#1", "Previous#2"]

        with pytest.raises(PolicyViolation):
            enforcer.check(user, password_policy=PasswordPolicySpec(history_length=1), password="Previous#2")

        enforcer.check(user, password_policy=PasswordPolicySpec(history_length=1), password="Oldest#1")

    def test_valid_password_passes(self, enforcer):
        spec = PasswordPolicySpec(min_length=8, digit_required=True, uppercase_required=True)
        enforcer.check(build_user("jdoe"), password_policy=spec, password="Str0ngPass")
