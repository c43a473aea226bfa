"""
Unit tests for the drain coordinator.
"""

import pytest

from ecs_deploy.aws.autoscaling import ClusterNodeCount
from ecs_deploy.aws.ecs import ContainerInstance
from ecs_deploy.drain import DrainCoordinator
from ecs_deploy.events import parse_event
from ecs_deploy.resource_cache import ResourceCache
from ecs_deploy.scaling import ScalingEngine
from ecs_deploy.schemas import InstanceResources, InstanceStatus, ScalingAction
from tests.fixtures.controller_fixtures import TEST_CLUSTER, FakeClock, get_controller_fixtures
from tests.fixtures.fake_platforms import FakeAutoScaling, FakeECS, RecordingRegistry

INSTANCE_ID = "i-0123456789abcdef0"
CONTAINER_INSTANCE_ARN = f"arn:aws:ecs:us-east-1:123456789012:container-instance/{TEST_CLUSTER}/{INSTANCE_ID}"


class TestDrainCoordinator:

    @pytest.fixture(autouse=True)
    def setup_teardown(self):
        self.fixtures = get_controller_fixtures()
        self.fixtures.setup_test_database()
        self.store = self.fixtures.store
        self.ecs = FakeECS()
        self.ecs.instance_clusters[INSTANCE_ID] = TEST_CLUSTER
        self.autoscaling = FakeAutoScaling()
        self.registry = RecordingRegistry()
        self.sleeps = []
        settings = self.fixtures.get_settings(drain_max_attempts=80, drain_poll_interval_seconds=15)
        self.cache = ResourceCache(self.store, self.ecs, settings, clock=FakeClock())
        self.coordinator = DrainCoordinator(
            self.store, self.ecs, self.autoscaling, self.cache,
            registry=self.registry, settings=settings, sleep=self.sleeps.append,
        )
        yield
        self.fixtures.cleanup_test_database()

    def test_instance_drains_before_hook_is_released(self):
        self.cache.upsert(TEST_CLUSTER, InstanceResources(
            instance_id=INSTANCE_ID, cluster_name=TEST_CLUSTER, availability_zone="us-east-1a",
            free_cpu=512, free_memory=1024,
        ))
        self.ecs.running_task_counts[CONTAINER_INSTANCE_ARN] = [2, 1, 0]

        cluster_name = self.coordinator.process_lifecycle_event(parse_event(self.fixtures.get_lifecycle_event()))

        assert cluster_name == TEST_CLUSTER
        assert ("drain_node", TEST_CLUSTER, CONTAINER_INSTANCE_ARN) in self.ecs.calls
        snapshot = self.store.get_cluster_snapshot(TEST_CLUSTER)
        assert snapshot.find_instance(INSTANCE_ID).status == InstanceStatus.DRAINING
        assert self.autoscaling.completed == []
        assert self.registry.launched[0][0] == ("drain", INSTANCE_ID)

        self.registry.run_all()

        polls = [c for c in self.ecs.calls if c[0] == "get_running_tasks_count"]
        assert len(polls) == 3
        assert self.sleeps == [15, 15]
        assert self.autoscaling.completed == [{
            'group': "test-cluster-asg",
            'instance_id': INSTANCE_ID,
            'hook': "test-cluster-drain",
            'token': "token-1",
            'result': "CONTINUE",
        }]

    def test_hook_released_after_max_attempts(self):
        self.ecs.running_task_counts[CONTAINER_INSTANCE_ARN] = [3]

        drained = self.coordinator.wait_for_drained_node(
            TEST_CLUSTER, CONTAINER_INSTANCE_ARN, INSTANCE_ID, "test-cluster-asg", "test-cluster-drain", "token-1"
        )

        assert drained is False
        assert len(self.sleeps) == 80
        assert len(self.autoscaling.completed) == 1

    def test_pending_variant_without_token(self):
        self.coordinator.wait_for_drained_node(
            TEST_CLUSTER, CONTAINER_INSTANCE_ARN, INSTANCE_ID, "test-cluster-asg", "test-cluster-drain"
        )
        assert self.autoscaling.completed[0]['token'] is None

    def test_resume_reattaches_draining_instances(self):
        self.fixtures.populate_services()
        self.cache.upsert(TEST_CLUSTER, InstanceResources(
            instance_id="i-1", cluster_name=TEST_CLUSTER, availability_zone="us-east-1a",
            free_cpu=512, free_memory=1024,
        ))
        self.ecs.container_instances[TEST_CLUSTER] = [
            ContainerInstance(container_instance_arn="arn:ci/1", ec2_instance_id="i-1", status="DRAINING"),
            ContainerInstance(container_instance_arn="arn:ci/2", ec2_instance_id="i-2", status="ACTIVE"),
            ContainerInstance(container_instance_arn="arn:ci/3", ec2_instance_id="i-3", status="DRAINING"),
        ]

        assert self.coordinator.resume() == 2

        key, _, args, _ = self.registry.launched[0]
        assert key == ("drain", "i-1")
        assert args == (TEST_CLUSTER, "arn:ci/1", "i-1", "test-cluster-asg", "test-cluster-drain", "")
        assert self.registry.launched[1][0] == ("drain", "i-3")
        snapshot = self.store.get_cluster_snapshot(TEST_CLUSTER)
        assert snapshot.find_instance("i-1").status == InstanceStatus.DRAINING
        assert snapshot.find_instance("i-3") is None
        assert [i.instance_id for i in snapshot.instances] == ["i-1"]

    def test_unknown_instance_does_not_change_scaling_decision(self):
        self.fixtures.populate_services()
        self.autoscaling.counts["test-cluster-asg"] = ClusterNodeCount("test-cluster-asg", 5, 5, 6)
        engine = ScalingEngine(self.store, self.cache, self.autoscaling, self.coordinator.settings)
        self.cache.rebuild(TEST_CLUSTER)
        for instance_id, zone in (("i-a", "us-east-1a"), ("i-b", "us-east-1b")):
            self.cache.upsert(TEST_CLUSTER, InstanceResources(
                instance_id=instance_id, cluster_name=TEST_CLUSTER, availability_zone=zone,
                free_cpu=2048, free_memory=4096,
            ))
        event = parse_event(self.fixtures.get_capacity_event("i-a", "us-east-1a", 2048, 4096))
        assert engine.process_capacity_event(event).action == ScalingAction.NONE

        self.coordinator.process_lifecycle_event(parse_event(self.fixtures.get_lifecycle_event()))

        snapshot = self.store.get_cluster_snapshot(TEST_CLUSTER)
        assert snapshot.find_instance(INSTANCE_ID) is None
        assert engine.process_capacity_event(event).action == ScalingAction.NONE
        assert self.autoscaling.scale_calls == []

    def test_resume_skips_clusters_without_group_or_hook(self):
        self.fixtures.populate_services([{"service_name": "api"}])
        self.store.create_service(self.store.get_service("api").model_copy(update={'cluster_name': "gone"}))
        assert self.coordinator.resume() == 0

        self.fixtures.populate_services()
        self.autoscaling.hooks["test-cluster-asg"] = []
        self.ecs.container_instances[TEST_CLUSTER] = [
            ContainerInstance(container_instance_arn="arn:ci/1", ec2_instance_id="i-1", status="DRAINING"),
        ]
        assert self.coordinator.resume() == 0
        assert self.registry.launched == []
