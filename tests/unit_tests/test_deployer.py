"""
Unit tests for the deployment orchestrator: deploy, stability verdicts and rollback.
"""

import pytest

from ecs_deploy.deployer import (
    MISSING_MEMORY_MESSAGE,
    DeploymentOrchestrator,
    max_wait_minutes,
    parse_deploy_spec,
)
from ecs_deploy.errors import InvalidSpec, NoRollbackTarget, NotFound
from ecs_deploy.schemas import DeploymentStatus
from ecs_deploy.watchers import WatcherRegistry
from tests.fixtures.controller_fixtures import TEST_CLUSTER, get_controller_fixtures
from tests.fixtures.fake_platforms import FakeECS, FakeIAM, FakeLoadBalancer, RecordingRegistry


class TestDeploy:
    """Deploys whose watchers are recorded but not run"""

    @pytest.fixture(autouse=True)
    def setup_teardown(self):
        self.fixtures = get_controller_fixtures()
        self.fixtures.setup_test_database()
        self.store = self.fixtures.store
        self.ecs = FakeECS()
        self.iam = FakeIAM()
        self.alb = FakeLoadBalancer()
        self.registry = RecordingRegistry()
        self.deployer = DeploymentOrchestrator(
            self.store, self.ecs, self.iam, registry=self.registry,
            settings=self.fixtures.get_settings(), load_balancer_factory=self.alb,
        )
        yield
        self.fixtures.cleanup_test_database()

    def test_spec_without_memory_is_rejected_before_any_mutation(self):
        data = self.fixtures.get_sample_spec_data()
        data["containers"][0].pop("memory")
        data["containers"][0].pop("memoryReservation")
        spec = parse_deploy_spec(data)

        with pytest.raises(InvalidSpec) as exc_info:
            self.deployer.deploy("web", spec)

        assert str(exc_info.value) == MISSING_MEMORY_MESSAGE
        assert self.ecs.mutations() == []
        assert self.iam.task_roles == []
        assert self.store.get_deploys_for_service("web") == []

    def test_spec_without_containers_is_rejected(self):
        spec = self.fixtures.get_sample_spec(containers=[])
        with pytest.raises(InvalidSpec):
            self.deployer.deploy("web", spec)
        assert self.ecs.mutations() == []

    def test_first_deploy_creates_service(self):
        result = self.deployer.deploy("web", self.fixtures.get_sample_spec())

        assert result.status == DeploymentStatus.RUNNING
        assert result.cluster_name == TEST_CLUSTER
        assert ("create_service", "web", result.task_definition_arn, None) in self.ecs.calls
        service = self.store.get_service("web")
        assert (service.cpu_reservation, service.cpu_limit) == (128, 128)
        assert (service.memory_reservation, service.memory_limit) == (256, 512)
        assert self.iam.task_roles == ["web"]
        assert self.registry.launched[0][0] == ("deployment", "web", result.deployment_time)

    def test_first_deploy_with_load_balancer_creates_routing(self):
        spec = self.fixtures.get_sample_spec(serviceProtocol="HTTP", stickiness={"enabled": True})
        self.deployer.deploy("web", spec)

        names = [c[0] for c in self.alb.calls]
        assert "create_target_group" in names
        assert "modify_target_group_attributes" in names
        assert "create_rules_for_target" in names
        assert self.store.get_service("web").listeners == ["arn:aws:elasticloadbalancing:listener/http"]
        assert self.iam.service_role_checks == 1

    def test_at_most_one_running_record_per_service(self):
        for _ in range(3):
            self.deployer.deploy("web", self.fixtures.get_sample_spec())
        self.deployer.deploy("api", self.fixtures.get_sample_spec("api"))

        assert len(self.store.get_running_deploys("web")) == 1
        assert len(self.store.get_running_deploys("api")) == 1
        statuses = [d.status for d in self.store.get_deploys_for_service("web")]
        assert statuses == [DeploymentStatus.RUNNING, DeploymentStatus.ABORTED, DeploymentStatus.ABORTED]

    def test_update_applies_changed_health_check_and_limits(self):
        spec = self.fixtures.get_sample_spec(serviceProtocol="HTTP")
        self.deployer.deploy("web", spec)
        self.alb.calls.clear()

        data = self.fixtures.get_sample_spec_data(serviceProtocol="HTTP", healthCheck={"path": "/health"})
        data["containers"][0]["memory"] = 1024
        result = self.deployer.deploy("web", parse_deploy_spec(data))

        assert ("update_health_check", self.alb.get_target_group_arn("web"), "/health") in self.alb.calls
        assert "modify_target_group_attributes" not in [c[0] for c in self.alb.calls]
        assert self.store.get_service("web").memory_limit == 1024
        assert self.ecs.services["web"] == result.task_definition_arn

    def test_late_verdict_on_aborted_record_is_ignored(self):
        first = self.deployer.deploy("web", self.fixtures.get_sample_spec())
        self.deployer.deploy("web", self.fixtures.get_sample_spec())
        first_record = self.store.get_deployment("web", first.deployment_time)
        assert first_record.status == DeploymentStatus.ABORTED

        updates_before = len([c for c in self.ecs.calls if c[0] == "update_service"])
        assert self.deployer.verify_stable(first_record) == DeploymentStatus.ABORTED
        assert len([c for c in self.ecs.calls if c[0] == "update_service"]) == updates_before

    def test_resume_relaunches_running_records(self):
        self.deployer.deploy("web", self.fixtures.get_sample_spec())
        self.deployer.deploy("api", self.fixtures.get_sample_spec("api"))
        self.registry.launched.clear()

        assert self.deployer.resume() == 2
        assert sorted(k[0][1] for k in self.registry.launched) == ["api", "web"]

    def test_redeploy_uses_stored_spec(self):
        first = self.deployer.deploy("web", self.fixtures.get_sample_spec(desiredCount=5))
        result = self.deployer.redeploy("web", first.deployment_time)

        latest = self.store.get_deployment("web", result.deployment_time)
        assert latest.deploy_data.desired_count == 5
        assert result.task_definition_arn.endswith(":2")

    def test_redeploy_unknown_time(self):
        with pytest.raises(NotFound):
            self.deployer.redeploy("web", "2020-01-01T00:00:00.000000Z")


class TestStabilityAndRollback:
    """Watchers run inline, so every deploy ends with its verdict"""

    @pytest.fixture(autouse=True)
    def setup_teardown(self):
        self.fixtures = get_controller_fixtures()
        self.fixtures.setup_test_database()
        self.store = self.fixtures.store
        self.ecs = FakeECS()
        self.deployer = DeploymentOrchestrator(
            self.store, self.ecs, FakeIAM(), registry=WatcherRegistry(run_inline=True),
            settings=self.fixtures.get_settings(), load_balancer_factory=FakeLoadBalancer(),
        )
        yield
        self.fixtures.cleanup_test_database()

    def _status(self, result):
        return self.store.get_deployment(result.service_name, result.deployment_time)

    def test_stable_deploy_succeeds(self):
        result = self.deployer.deploy("web", self.fixtures.get_sample_spec())
        assert self._status(result).status == DeploymentStatus.SUCCESS

    def test_failed_deploy_rolls_back_to_last_success(self):
        d1 = self.deployer.deploy("web", self.fixtures.get_sample_spec())
        self.ecs.broken_task_definitions.add("arn:aws:ecs:us-east-1:123456789012:task-definition/web:2")
        d2 = self.deployer.deploy("web", self.fixtures.get_sample_spec())

        failed = self._status(d2)
        assert failed.status == DeploymentStatus.FAILED
        assert failed.deploy_error == (
            f"Deployment failed: found task with taskdefinition {d2.task_definition_arn} "
            f"and status PENDING (expected RUNNING)"
        )
        assert self._status(d1).status == DeploymentStatus.SUCCESS
        assert self.ecs.calls[-1] == ("update_service", "web", d1.task_definition_arn)
        assert self.ecs.services["web"] == d1.task_definition_arn

    def test_rollback_writes_no_record(self):
        self.deployer.deploy("web", self.fixtures.get_sample_spec())
        self.ecs.broken_task_definitions.add("arn:aws:ecs:us-east-1:123456789012:task-definition/web:2")
        self.deployer.deploy("web", self.fixtures.get_sample_spec())

        assert len(self.store.get_deploys_for_service("web")) == 2
        self.deployer.rollback(TEST_CLUSTER, "web")
        assert len(self.store.get_deploys_for_service("web")) == 2

    def test_rollback_searches_history_when_previous_failed(self):
        d1 = self.deployer.deploy("web", self.fixtures.get_sample_spec())
        for revision in (2, 3):
            self.ecs.broken_task_definitions.add(
                f"arn:aws:ecs:us-east-1:123456789012:task-definition/web:{revision}"
            )
            self.deployer.deploy("web", self.fixtures.get_sample_spec())

        assert self.deployer.rollback(TEST_CLUSTER, "web") == d1.task_definition_arn

    def test_no_rollback_target(self):
        self.ecs.broken_task_definitions.add("arn:aws:ecs:us-east-1:123456789012:task-definition/web:1")
        result = self.deployer.deploy("web", self.fixtures.get_sample_spec())

        assert self._status(result).status == DeploymentStatus.FAILED
        with pytest.raises(NoRollbackTarget, match="Could not rollback, no stable version found"):
            self.deployer.rollback(TEST_CLUSTER, "web")

    def test_timeout_is_recorded(self):
        self.ecs.stable = False
        result = self.deployer.deploy("web", self.fixtures.get_sample_spec())

        record = self._status(result)
        assert record.status == DeploymentStatus.FAILED
        assert record.deploy_error == "Deployment timed out"

    def test_watcher_twice_on_terminal_record_changes_nothing(self):
        result = self.deployer.deploy("web", self.fixtures.get_sample_spec())
        record = self._status(result)
        calls_before = list(self.ecs.calls)

        assert self.deployer.verify_stable(record) == DeploymentStatus.SUCCESS
        assert self.deployer.verify_stable(record) == DeploymentStatus.SUCCESS
        assert self.ecs.calls == calls_before
        assert self._status(result).status_updated_at == record.status_updated_at

    def test_wait_uses_grace_period_timeout(self):
        spec = self.fixtures.get_sample_spec(healthCheck={"gracePeriodSeconds": 900})
        self.deployer.deploy("web", spec)
        assert ("wait_until_stable", "web", 30) in self.ecs.calls


class TestDeploySpecParsing:

    def test_defaults_mark_unset_values(self):
        spec = parse_deploy_spec({"cluster": TEST_CLUSTER, "containers": []}, "web")
        assert spec.service_name == "web"
        assert spec.deregistration_delay == -1
        assert spec.stickiness.duration == -1
        assert spec.has_load_balancer is True

    def test_invalid_payload(self):
        with pytest.raises(InvalidSpec):
            parse_deploy_spec({"containers": []})
        with pytest.raises(InvalidSpec):
            parse_deploy_spec(["not", "an", "object"])

    @pytest.mark.parametrize("grace, minutes", [(0, 15), (300, 20), (600, 20), (601, 30), (1800, 40)])
    def test_max_wait_minutes(self, grace, minutes):
        spec = parse_deploy_spec({"cluster": TEST_CLUSTER, "healthCheck": {"gracePeriodSeconds": grace}})
        assert max_wait_minutes(spec) == minutes
