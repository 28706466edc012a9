"""
Tests for the Push Workflow and the PushPropagator.
"""

import pytest
from pydantic import SecretStr

from factories import account, make_resource
from recon_engine.engine import PasswordPolicySpec
from recon_engine.models import (
    ConnectorCapability,
    MatchingRule,
    PropagationStatus,
    PushTask,
    ReportStatus,
    ResourceOperation,
    RunStatus,
    UnmatchingRule,
    build_user,
)
from recon_engine.search import attr_eq
from recon_engine.workflows import PushPropagator


def push_task(**kwargs) -> PushTask:
    settings = {"key": "ldap-push", "resource": "ldap"}
    settings.update(kwargs)
    return PushTask(**settings)


class TestPushPropagator:
    """Per-resource propagation of a single internal mutation."""

    @pytest.fixture
    def propagator(self, connector_manager):
        return PushPropagator(connector_manager.checkout)

    @pytest.fixture
    def user(self):
        return build_user("jdoe", password="s3cret!", plain_attrs={"email": ["jdoe@example.com"]})

    def test_failure_on_one_resource_does_not_stop_the_others(self, propagator, user, connector_factory):
        resources = [
            make_resource("r1"),
            make_resource("r2", connector_config={"fail_operations": {"create": "CONNECT"}}),
            make_resource("r3"),
        ]

        results = propagator.propagate_mutation(user, ResourceOperation.CREATE, resources)

        assert results["r1"].status == PropagationStatus.SUCCESS
        assert results["r2"].status == PropagationStatus.FAILURE
        assert results["r2"].propagation_attempted
        assert "CONNECT" in results["r2"].message
        assert results["r3"].status == PropagationStatus.SUCCESS
        assert connector_factory.directory_for(resources[0]).get("__ACCOUNT__", "jdoe") is not None
        assert connector_factory.directory_for(resources[2]).get("__ACCOUNT__", "jdoe") is not None

    def test_password_only_reaches_marked_resources(self, propagator, user, connector_factory):
        marked = make_resource("vault", propagate_password=True)
        unmarked = make_resource("crm")

        propagator.propagate_mutation(user, ResourceOperation.CREATE, [marked, unmarked],
                                      password=SecretStr("s3cret!"))

        assert connector_factory.directory_for(marked).passwords == {"jdoe": "s3cret!"}
        assert connector_factory.directory_for(unmarked).passwords == {}
        assert connector_factory.directory_for(unmarked).get("__ACCOUNT__", "jdoe") is not None

    def test_existing_object_is_updated(self, propagator, user, connector_factory):
        resource = make_resource(objects=[account("jdoe", mail="old@example.com")])

        pbr, _ = propagator.compute(user, ResourceOperation.UPDATE, [resource])
        results = propagator.propagate(user, pbr, [resource])

        assert pbr.get(ResourceOperation.UPDATE) == {"ldap"}
        assert results["ldap"].status == PropagationStatus.SUCCESS
        remote = connector_factory.directory_for(resource).get("__ACCOUNT__", "jdoe")
        assert remote.get_values("mail") == ["jdoe@example.com"]

    def test_missing_object_is_created_on_update(self, propagator, user):
        pbr, _ = propagator.compute(user, ResourceOperation.UPDATE, [make_resource()])

        assert pbr.get(ResourceOperation.CREATE) == {"ldap"}

    def test_partial_update(self, propagator, connector_factory):
        resource = make_resource(objects=[account("jdoe", mail="old@example.com", givenName="Johnny")])
        user = build_user("jdoe", plain_attrs={"email": ["new@example.com"], "firstname": ["John"]})

        results = propagator.propagate_mutation(user, ResourceOperation.UPDATE, [resource],
                                                changed_schemas=["email"])

        assert results["ldap"].status == PropagationStatus.SUCCESS
        remote = connector_factory.directory_for(resource).get("__ACCOUNT__", "jdoe")
        assert remote.get_values("mail") == ["new@example.com"]
        assert remote.get_values("givenName") == ["Johnny"]

    def test_delete(self, propagator, user, connector_factory):
        present = make_resource("r1", objects=[account("jdoe")])
        absent = make_resource("r2")

        results = propagator.propagate_mutation(user, ResourceOperation.DELETE, [present, absent])

        assert results["r1"].status == PropagationStatus.SUCCESS
        assert results["r2"].status == PropagationStatus.NOT_ATTEMPTED
        assert connector_factory.directory_for(present).get("__ACCOUNT__", "jdoe") is None

    def test_missing_capability_is_not_attempted(self, propagator, user, connector_factory):
        resource = make_resource(capabilities=[ConnectorCapability.SEARCH])

        results = propagator.propagate_mutation(user, ResourceOperation.CREATE, [resource])

        assert results["ldap"].status == PropagationStatus.NOT_ATTEMPTED
        assert not results["ldap"].propagation_attempted
        assert connector_factory.directory_for(resource).get("__ACCOUNT__", "jdoe") is None

    def test_dry_run(self, propagator, user, connector_factory):
        resource = make_resource()

        results = propagator.propagate_mutation(user, ResourceOperation.CREATE, [resource], dry_run=True)

        assert results["ldap"].status == PropagationStatus.SUCCESS
        assert connector_factory.directory_for(resource).get("__ACCOUNT__", "jdoe") is None

    def test_resources_without_provision_are_skipped(self, propagator, user):
        resource = make_resource(provisions=[])

        assert propagator.propagate_mutation(user, ResourceOperation.CREATE, [resource]) == {}


class TestPushWorkflow:
    """Scheduled push of a resource's records."""

    @pytest.fixture
    def resource(self):
        return make_resource(objects=[account("existing", mail="old@example.com")])

    @pytest.fixture
    def users(self, store):
        store.save(build_user("existing", plain_attrs={"email": ["existing@example.com"]}))
        store.save(build_user("newbie", plain_attrs={"email": ["newbie@example.com"]}))

    def test_create_and_update(self, resource, users, make_config_store, run_task, connector_factory):
        config_store = make_config_store([resource], push_tasks=[push_task()])

        run = run_task(config_store, "ldap-push")

        by_name = {r.name: r for r in run.reports}
        assert by_name["existing"].operation == ResourceOperation.UPDATE
        assert by_name["newbie"].operation == ResourceOperation.CREATE
        assert all(r.status == ReportStatus.SUCCESS for r in run.reports)
        assert run.status == RunStatus.SUCCESS
        directory = connector_factory.directory_for(resource)
        assert directory.get("__ACCOUNT__", "existing").get_values("mail") == ["existing@example.com"]
        assert directory.get("__ACCOUNT__", "newbie") is not None

    def test_filter(self, resource, users, make_config_store, run_task):
        task = push_task(filters={"USER": attr_eq("username", "newbie")})
        config_store = make_config_store([resource], push_tasks=[task])

        run = run_task(config_store, "ldap-push")

        assert [r.name for r in run.reports] == ["newbie"]

    def test_unmatching_assign_links_record(self, resource, users, make_config_store, run_task, store):
        config_store = make_config_store([resource], push_tasks=[push_task(unmatching_rule=UnmatchingRule.ASSIGN)])

        run_task(config_store, "ldap-push")

        newbie = next(u for u in store.all("USER") if u.username == "newbie")
        assert newbie.resources == ["ldap"]

    def test_deprovision(self, resource, users, make_config_store, run_task, connector_factory):
        task = push_task(matching_rule=MatchingRule.DEPROVISION, unmatching_rule=UnmatchingRule.IGNORE)
        config_store = make_config_store([resource], push_tasks=[task])

        run = run_task(config_store, "ldap-push")

        outcomes = {r.name: (r.operation, r.status) for r in run.reports}
        assert outcomes == {
            "existing": (ResourceOperation.DELETE, ReportStatus.SUCCESS),
            "newbie": (ResourceOperation.NONE, ReportStatus.IGNORE),
        }
        assert connector_factory.directory_for(resource).get("__ACCOUNT__", "existing") is None

    def test_deprovision_ignores_policies(self, resource, users, make_config_store, run_task, connector_factory):
        resource = resource.model_copy(update={"password_policy": "required"})
        task = push_task(matching_rule=MatchingRule.DEPROVISION, unmatching_rule=UnmatchingRule.IGNORE)
        config_store = make_config_store(
            [resource], push_tasks=[task],
            password_policies={"required": PasswordPolicySpec(allow_null_password=False)},
        )

        run = run_task(config_store, "ldap-push")

        existing = next(r for r in run.reports if r.name == "existing")
        assert (existing.operation, existing.status) == (ResourceOperation.DELETE, ReportStatus.SUCCESS)
        assert connector_factory.directory_for(resource).get("__ACCOUNT__", "existing") is None

    def test_dry_run(self, resource, users, make_config_store, run_task, connector_factory):
        config_store = make_config_store([resource], push_tasks=[push_task()])

        run = run_task(config_store, "ldap-push", dry_run=True)

        assert all(r.status == ReportStatus.SUCCESS for r in run.reports)
        assert connector_factory.directory_for(resource).get("__ACCOUNT__", "newbie") is None

    def test_policy_violation(self, resource, users, make_config_store, run_task):
        resource = resource.model_copy(update={"password_policy": "required"})
        config_store = make_config_store(
            [resource], push_tasks=[push_task()],
            password_policies={"required": PasswordPolicySpec(allow_null_password=False)},
        )

        run = run_task(config_store, "ldap-push")

        assert all(r.status == ReportStatus.FAILURE for r in run.reports)
        assert run.status == RunStatus.FAILURE

    def test_connector_failure_is_reported_per_record(self, users, make_config_store, run_task):
        resource = make_resource(connector_config={"fail_operations": {"create": "TIMEOUT"}})
        config_store = make_config_store([resource], push_tasks=[push_task()])

        run = run_task(config_store, "ldap-push")

        assert [(r.operation, r.status) for r in run.reports] == [
            (ResourceOperation.CREATE, ReportStatus.FAILURE),
            (ResourceOperation.CREATE, ReportStatus.FAILURE),
        ]

    def test_password_sent_only_when_resource_is_marked(self, make_config_store, run_task, store,
                                                        connector_factory):
        store.save(build_user("jdoe", password="s3cret!"))
        marked = make_resource(propagate_password=True)
        config_store = make_config_store([marked], push_tasks=[push_task()])

        run_task(config_store, "ldap-push")

        assert connector_factory.directory_for(marked).passwords == {"jdoe": "s3cret!"}
