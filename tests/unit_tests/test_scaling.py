"""
Unit tests for the resource cache and the fleet scaling decision engine.
"""

from datetime import timedelta

import pytest

from ecs_deploy.errors import NotFound, PlatformError
from ecs_deploy.events import parse_event
from ecs_deploy.resource_cache import ResourceCache
from ecs_deploy.scaling import ScalingEngine, free_per_zone, zones_with_room
from ecs_deploy.schemas import ClusterResourceSnapshot, InstanceResources, InstanceStatus, ScalingAction
from tests.fixtures.controller_fixtures import TEST_CLUSTER, FakeClock, get_controller_fixtures
from tests.fixtures.fake_platforms import FakeAutoScaling, FakeECS


def instance(instance_id, zone, free_cpu, free_memory, status=InstanceStatus.ACTIVE):
    return InstanceResources(instance_id=instance_id, cluster_name=TEST_CLUSTER, availability_zone=zone,
                             free_cpu=free_cpu, free_memory=free_memory, status=status)


class TestResourceCache:

    @pytest.fixture(autouse=True)
    def setup_teardown(self):
        self.fixtures = get_controller_fixtures()
        self.fixtures.setup_test_database()
        self.store = self.fixtures.store
        self.clock = FakeClock()
        self.ecs = FakeECS()
        self.cache = ResourceCache(self.store, self.ecs, self.fixtures.get_settings(), clock=self.clock)
        yield
        self.fixtures.cleanup_test_database()

    def test_missing_snapshot_is_stale(self):
        snapshot, stale = self.cache.get(TEST_CLUSTER)
        assert snapshot is None
        assert stale is True

    def test_snapshot_goes_stale_after_ttl(self):
        self.ecs.instances[TEST_CLUSTER] = [instance("i-1", "us-east-1a", 1024, 2048)]
        self.cache.rebuild(TEST_CLUSTER)

        self.clock.advance(minutes=4)
        assert self.cache.get(TEST_CLUSTER)[1] is False
        self.clock.advance(seconds=1)
        assert self.cache.get(TEST_CLUSTER)[1] is True

    def test_rebuild_keeps_scaling_history(self):
        self.cache.record_decision(TEST_CLUSTER, ScalingAction.UP, mutated=True)
        scaled_at = self.clock.now
        self.clock.advance(minutes=1)
        self.ecs.instances[TEST_CLUSTER] = [instance("i-1", "us-east-1a", 1024, 2048)]

        snapshot = self.cache.rebuild(TEST_CLUSTER)

        assert snapshot.last_scaling_action == ScalingAction.UP
        assert snapshot.last_scaling_at == scaled_at
        assert snapshot.snapshot_at == self.clock.now
        assert [i.instance_id for i in snapshot.instances] == ["i-1"]

    def test_upsert_replaces_by_instance_id(self):
        self.cache.upsert(TEST_CLUSTER, instance("i-1", "us-east-1a", 1024, 2048))
        self.cache.upsert(TEST_CLUSTER, instance("i-2", "us-east-1b", 1024, 2048))
        snapshot = self.cache.upsert(TEST_CLUSTER, instance("i-1", "us-east-1a", 100, 200))

        assert len(snapshot.instances) == 2
        assert snapshot.find_instance("i-1").free_memory == 200

    def test_upsert_keeps_draining_status(self):
        self.cache.upsert(TEST_CLUSTER, instance("i-1", "us-east-1a", 1024, 2048))
        self.cache.mark_draining(TEST_CLUSTER, "i-1")
        snapshot = self.cache.upsert(TEST_CLUSTER, instance("i-1", "us-east-1a", 2048, 4096))

        assert snapshot.find_instance("i-1").status == InstanceStatus.DRAINING
        assert snapshot.find_instance("i-1").free_memory == 4096

    def test_cooldown_only_moves_on_mutation(self):
        snapshot = self.cache.record_decision(TEST_CLUSTER, ScalingAction.NONE, mutated=False)
        assert self.cache.in_cooldown(snapshot) is False

        snapshot = self.cache.record_decision(TEST_CLUSTER, ScalingAction.DOWN, mutated=True)
        assert self.cache.in_cooldown(snapshot) is True
        self.clock.advance(minutes=5)
        assert self.cache.in_cooldown(snapshot) is False


class TestScalingDecision:

    @pytest.fixture(autouse=True)
    def setup_teardown(self):
        self.fixtures = get_controller_fixtures()
        self.fixtures.setup_test_database()
        self.store = self.fixtures.store
        self.fixtures.populate_services()
        self.clock = FakeClock()
        self.ecs = FakeECS()
        self.autoscaling = FakeAutoScaling(desired=3, min_size=1, max_size=5)
        settings = self.fixtures.get_settings()
        self.cache = ResourceCache(self.store, self.ecs, settings, clock=self.clock)
        self.engine = ScalingEngine(self.store, self.cache, self.autoscaling, settings)
        yield
        self.fixtures.cleanup_test_database()

    def _snapshot(self, instances, last_scaling_at=None):
        self.store.put_cluster_snapshot(ClusterResourceSnapshot(
            cluster_name=TEST_CLUSTER,
            instances=instances,
            snapshot_at=self.clock.now,
            last_scaling_at=last_scaling_at,
            last_scaling_action=ScalingAction.UP if last_scaling_at else ScalingAction.NONE,
        ))

    def _process(self, payload):
        return self.engine.process_capacity_event(parse_event(payload))

    def test_worst_case_unit(self):
        assert self.engine.worst_case_unit(TEST_CLUSTER) == (256, 512)
        with pytest.raises(NotFound):
            self.engine.worst_case_unit("empty-cluster")

    def test_scale_up_when_a_zone_has_no_room(self):
        self._snapshot([
            instance("i-a", "us-east-1a", 1024, 2048),
            instance("i-b", "us-east-1b", 1024, 2048),
            instance("i-c", "us-east-1c", 1024, 100),
        ])
        event = self.fixtures.get_capacity_event("i-a", "us-east-1a", 1024, 2048)

        decision = self._process(event)
        assert decision.action == ScalingAction.UP
        assert (decision.desired_before, decision.desired_after) == (3, 4)
        assert self.autoscaling.counts["test-cluster-asg"].desired == 4

        self.clock.advance(minutes=1)
        decision = self._process(event)
        assert decision.action == ScalingAction.NONE
        assert self.autoscaling.counts["test-cluster-asg"].desired == 4
        assert self.autoscaling.scale_calls == [("test-cluster-asg", 1)]

        snapshot = self.store.get_cluster_snapshot(TEST_CLUSTER)
        assert snapshot.last_scaling_action == ScalingAction.UP
        assert snapshot.last_decision == ScalingAction.NONE

    def test_draining_instance_gives_no_room(self):
        self._snapshot([
            instance("i-a", "us-east-1a", 1024, 2048),
            instance("i-b", "us-east-1b", 4096, 8192, status=InstanceStatus.DRAINING),
        ])
        decision = self._process(self.fixtures.get_capacity_event("i-a", "us-east-1a", 1024, 2048))
        assert decision.action == ScalingAction.UP

    def test_scale_down_when_every_zone_can_absorb_an_instance(self):
        self._snapshot([
            instance("i-a", "us-east-1a", 2048, 4096),
            instance("i-b", "us-east-1b", 2048, 4096),
            instance("i-c", "us-east-1c", 2048, 4096),
        ], last_scaling_at=self.clock.now - timedelta(minutes=10))

        decision = self._process(self.fixtures.get_capacity_event("i-a", "us-east-1a", 2048, 4096))

        assert decision.action == ScalingAction.DOWN
        assert decision.desired_after == 2
        assert self.autoscaling.scale_calls == [("test-cluster-asg", -1)]

    def test_scale_down_respects_buffer(self):
        # needed memory = 2048 registered + 512 worst + 256 buffer
        self._snapshot([
            instance("i-a", "us-east-1a", 2048, 2815),
            instance("i-b", "us-east-1b", 2048, 4096),
        ])
        decision = self._process(self.fixtures.get_capacity_event("i-a", "us-east-1a", 2048, 2815))
        assert decision.action == ScalingAction.NONE

        self._snapshot([
            instance("i-a", "us-east-1a", 2048, 2816),
            instance("i-b", "us-east-1b", 2048, 4096),
        ])
        decision = self._process(self.fixtures.get_capacity_event("i-a", "us-east-1a", 2048, 2816))
        assert decision.action == ScalingAction.DOWN

    def test_scale_down_waits_for_cooldown(self):
        self._snapshot([
            instance("i-a", "us-east-1a", 2048, 4096),
            instance("i-b", "us-east-1b", 2048, 4096),
        ], last_scaling_at=self.clock.now - timedelta(minutes=2))

        decision = self._process(self.fixtures.get_capacity_event("i-a", "us-east-1a", 2048, 4096))
        assert decision.action == ScalingAction.NONE
        assert self.autoscaling.scale_calls == []

    def test_no_scale_up_at_maximum(self):
        self.autoscaling.counts["test-cluster-asg"].desired = 5
        self._snapshot([
            instance("i-a", "us-east-1a", 100, 100),
            instance("i-b", "us-east-1b", 100, 100),
        ])
        decision = self._process(self.fixtures.get_capacity_event("i-a", "us-east-1a", 100, 100))
        assert decision.action == ScalingAction.NONE
        assert self.autoscaling.scale_calls == []

    def test_stale_snapshot_is_rebuilt(self):
        self.ecs.instances[TEST_CLUSTER] = [
            instance("i-a", "us-east-1a", 1024, 2048),
            instance("i-b", "us-east-1b", 1024, 2048),
        ]
        self._process(self.fixtures.get_capacity_event("i-a", "us-east-1a", 1000, 2000))

        assert ("get_free_resources", TEST_CLUSTER) in self.ecs.calls
        snapshot = self.store.get_cluster_snapshot(TEST_CLUSTER)
        assert snapshot.snapshot_at == self.clock.now
        assert snapshot.find_instance("i-a").free_memory == 2000

    def test_rebuild_failure_aborts_the_cycle(self):
        self.ecs.fail_rebuild = True
        with pytest.raises(PlatformError):
            self._process(self.fixtures.get_capacity_event("i-a", "us-east-1a", 1024, 2048))
        assert self.store.get_cluster_snapshot(TEST_CLUSTER) is None
        assert self.autoscaling.scale_calls == []

    def test_zone_helpers(self):
        instances = [
            instance("i-a", "us-east-1a", 300, 600),
            instance("i-b", "us-east-1a", 100, 100),
            instance("i-c", "us-east-1b", 256, 600),
        ]
        assert zones_with_room(instances, 256, 512) == {"us-east-1a": True, "us-east-1b": False}
        assert free_per_zone(instances) == {"us-east-1a": (400, 700), "us-east-1b": (256, 600)}
