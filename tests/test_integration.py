"""
Integration tests for the Reconciliation Engine.

An HR resource is pulled into the identity store and the result is pushed
to a directory resource, all driven by the job manager from a YAML file.
"""

import pytest
import yaml

from recon_engine.audit import JsonlReportSink
from recon_engine.engine import ConfigStore
from recon_engine.jobs import JobManager, JobStatus, PullJobDelegate, PushJobDelegate, job_key_for
from recon_engine.models import (
    ConnectorObject,
    ReportStatus,
    ResourceOperation,
    RunStatus,
    SyncDeltaType,
    TaskType,
    build_user,
)

USER_MAPPING = {"items": [
    {"int_attr_name": "username", "ext_attr_name": "__NAME__", "conn_object_key": True, "mandatory": True},
    {"int_attr_name": "email", "ext_attr_name": "mail"},
    {"int_attr_name": "department", "ext_attr_name": "ou"},
]}


def hr_employee(uid, mail, department):
    return {"object_class": "__ACCOUNT__", "uid": uid, "name": uid,
            "attributes": {"mail": [mail], "ou": [department]}}


@pytest.fixture
def config_path(tmp_path):
    data = {
        "domain": "Acme",
        "resources": [
            {
                "key": "hr",
                "connector": "memory",
                "capabilities": ["SEARCH", "SYNC"],
                "connector_config": {"objects": [
                    hr_employee("jdoe", "jdoe@acme.com", "Engineering"),
                    hr_employee("asmith", "asmith@acme.com", "Finance"),
                ]},
                "provisions": [{"any_type": "USER", "object_class": "__ACCOUNT__", "mapping": USER_MAPPING}],
                "correlation_rules": {"USER": {"schemas": ["username"]}},
            },
            {
                "key": "ldap",
                "connector": "memory",
                "account_policy": "usernames",
                "provisions": [{"any_type": "USER", "object_class": "__ACCOUNT__", "mapping": USER_MAPPING}],
            },
        ],
        "account_policies": {"usernames": {"min_length": 3, "all_lower_case": True}},
        "pull_tasks": [{"key": "hr-sync", "resource": "hr", "pull_mode": "INCREMENTAL"}],
        "push_tasks": [{"key": "ldap-export", "resource": "ldap", "unmatching_rule": "ASSIGN"}],
        "sync_token_path": str(tmp_path / "tokens.json"),
        "report_dir": str(tmp_path / "reports"),
    }
    path = tmp_path / "engine.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


@pytest.fixture
def engine(config_path, store, connector_manager):
    config_store = ConfigStore(config_path=config_path)
    sink = JsonlReportSink(config_store.config.report_dir)
    delegate_args = (config_store, store, connector_manager, sink)
    manager = JobManager(config_store, {
        TaskType.PULL: PullJobDelegate(*delegate_args),
        TaskType.PUSH: PushJobDelegate(*delegate_args),
    })
    return config_store, manager, sink


@pytest.mark.integration
class TestEndToEnd:
    """Pull from HR, push to the directory."""

    def test_pull_then_push(self, engine, store, connector_factory):
        config_store, manager, sink = engine

        pull_run = manager.run_job("hr-sync")
        push_run = manager.run_job("ldap-export")

        assert pull_run.status == RunStatus.SUCCESS
        assert sorted(u.username for u in store.all("USER")) == ["asmith", "jdoe"]
        assert push_run.status == RunStatus.SUCCESS
        assert [r.operation for r in push_run.reports] == [ResourceOperation.CREATE] * 2

        ldap = connector_factory.directory_for(config_store.get_resource("ldap"))
        assert ldap.get("__ACCOUNT__", "jdoe").get_values("ou") == ["Engineering"]
        assert all(u.resources == ["ldap"] for u in store.all("USER"))

        assert [r.task_key for r in sink.get_runs()] == ["ldap-export", "hr-sync"]
        assert manager.history(job_key_for("Acme", "hr-sync"))[0].status == JobStatus.SUCCESS

    def test_incremental_changes_flow_through(self, engine, store, connector_factory):
        config_store, manager, _ = engine
        manager.run_job("hr-sync")
        manager.run_job("ldap-export")
        hr = connector_factory.directory_for(config_store.get_resource("hr"))

        hr.put(ConnectorObject(**hr_employee("jdoe", "john.doe@acme.com", "Platform")), SyncDeltaType.UPDATE)
        hr.remove("__ACCOUNT__", "asmith")
        pull_run = manager.run_job("hr-sync")

        outcomes = {r.name: (r.operation, r.status) for r in pull_run.reports}
        assert outcomes == {
            "jdoe": (ResourceOperation.UPDATE, ReportStatus.SUCCESS),
            "asmith": (ResourceOperation.DELETE, ReportStatus.SUCCESS),
        }
        assert config_store.get_sync_token("hr", "USER") == hr.latest_token()

        push_run = manager.run_job("ldap-export")
        assert [(r.name, r.operation) for r in push_run.reports] == [("jdoe", ResourceOperation.UPDATE)]
        ldap = connector_factory.directory_for(config_store.get_resource("ldap"))
        assert ldap.get("__ACCOUNT__", "jdoe").get_values("mail") == ["john.doe@acme.com"]

    def test_sync_tokens_survive_restart(self, engine, config_path, store, connector_manager):
        config_store, manager, _ = engine
        manager.run_job("hr-sync")

        reloaded = ConfigStore(config_path=config_path)

        assert reloaded.get_sync_token("hr", "USER") == "2"

    def test_dry_run_pull_changes_nothing(self, engine, store):
        config_store, manager, sink = engine

        run = manager.run_job("hr-sync", dry_run=True)

        assert run.dry_run
        assert run.text.startswith("==> Dry run only")
        assert store.all("USER") == []
        assert config_store.get_sync_token("hr", "USER") is None
        assert sink.get_runs()[0].dry_run

    def test_policy_failure_does_not_stop_the_push(self, engine, store):
        config_store, manager, _ = engine
        manager.run_job("hr-sync")
        store.save(build_user("X"))

        run = manager.run_job("ldap-export")

        statuses = {r.name: r.status for r in run.reports}
        assert statuses == {"asmith": ReportStatus.SUCCESS, "jdoe": ReportStatus.SUCCESS,
                            "X": ReportStatus.FAILURE}
        assert run.status == RunStatus.FAILURE
        assert manager.history(job_key_for("Acme", "ldap-export"))[0].status == JobStatus.SUCCESS
