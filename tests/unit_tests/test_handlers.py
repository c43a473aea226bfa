"""
Tests for the event entry points: the Lambda handler, the SQS worker and the CLI.
"""

import json

import boto3
import pytest
from click.testing import CliRunner

from ecs_deploy.cli import cli
from ecs_deploy.controller import Controller
from ecs_deploy.handlers import lambda_handler
from ecs_deploy.schemas import DeploymentStatus, InstanceResources, InstanceStatus
from ecs_deploy.worker import EventWorker
from tests.fixtures.controller_fixtures import TEST_CLUSTER, FakeClock, get_controller_fixtures
from tests.fixtures.fake_platforms import FakeAutoScaling, FakeECS, FakeIAM, FakeLoadBalancer, RecordingRegistry

INSTANCE_ID = "i-0123456789abcdef0"


class TestEntryPoints:

    @pytest.fixture(autouse=True)
    def setup_teardown(self):
        self.fixtures = get_controller_fixtures()
        self.fixtures.setup_test_database()
        self.fixtures.populate_services()
        self.ecs = FakeECS()
        self.ecs.instance_clusters[INSTANCE_ID] = TEST_CLUSTER
        self.autoscaling = FakeAutoScaling()
        self.registry = RecordingRegistry()
        self.controller = Controller(
            self.fixtures.store, self.ecs, self.autoscaling, FakeIAM(),
            settings=self.fixtures.get_settings(sqs_wait_time_seconds=0),
            registry=self.registry, load_balancer_factory=FakeLoadBalancer(), clock=FakeClock(),
            sleep=lambda seconds: None,
        )
        yield
        self.fixtures.cleanup_test_database()

    def test_lambda_handler_processes_lifecycle_event(self):
        self.controller.cache.upsert(TEST_CLUSTER, InstanceResources(
            instance_id=INSTANCE_ID, cluster_name=TEST_CLUSTER, availability_zone="us-east-1a",
            free_cpu=512, free_memory=1024,
        ))
        event = {"Records": [{"Sns": {"Message": json.dumps(self.fixtures.get_lifecycle_event())}}]}

        response = lambda_handler(event, None, controller=self.controller)

        assert response['statusCode'] == 200
        assert json.loads(response['body']) == {'cluster_name': TEST_CLUSTER}
        snapshot = self.fixtures.store.get_cluster_snapshot(TEST_CLUSTER)
        assert snapshot.find_instance(INSTANCE_ID).status == InstanceStatus.DRAINING

    def test_lambda_handler_returns_scaling_decision(self):
        event = self.fixtures.get_capacity_event("i-a", "us-east-1a", 100, 100)

        response = lambda_handler(event, None, controller=self.controller)

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['cluster_name'] == TEST_CLUSTER
        assert body['action'] == "up"

    def test_lambda_handler_rejects_invalid_event(self):
        response = lambda_handler({"detail-type": "Something else", "detail": {}}, None, controller=self.controller)
        assert response['statusCode'] == 400

    def test_lambda_handler_unknown_instance(self):
        event = self.fixtures.get_lifecycle_event(instance_id="i-unknown")
        response = lambda_handler(event, None, controller=self.controller)
        assert response['statusCode'] == 404

    def test_controller_reads_and_manual_scale(self):
        result = self.controller.deploy("web", self.fixtures.get_sample_spec_data())

        status = self.controller.get_deployment_status("web", result.deployment_time)
        assert status.status == DeploymentStatus.RUNNING
        assert [d.time for d in self.controller.get_deploys_for_service("web")] == [result.deployment_time]
        assert [s.service_name for s in self.controller.get_services()] == ["web", "worker"]

        self.controller.scale_service("web", 6)
        assert self.fixtures.store.get_service("web").desired_count == 6
        assert ("manual_scale_service", "web", 6) in self.ecs.calls

    def test_resume_counts_watchers(self):
        self.controller.deploy("web", self.fixtures.get_sample_spec_data())
        self.registry.launched.clear()

        assert self.controller.resume() == {'deployments': 1, 'drains': 0}

    def test_worker_deletes_processed_and_invalid_messages(self, mocked_aws):
        sqs = boto3.client("sqs", region_name="us-east-1")
        queue_url = sqs.create_queue(QueueName="ecs-events")['QueueUrl']
        sqs.send_message(QueueUrl=queue_url, MessageBody=json.dumps(self.fixtures.get_lifecycle_event()))
        sqs.send_message(QueueUrl=queue_url, MessageBody="garbage")

        worker = EventWorker(self.controller, sqs_client=sqs, queue_url=queue_url,
                             settings=self.fixtures.get_settings(sqs_wait_time_seconds=0))
        handled = 0
        for _ in range(3):
            handled += worker.poll_once()

        assert handled == 2
        assert sqs.receive_message(QueueUrl=queue_url, WaitTimeSeconds=0).get('Messages') is None
        assert self.registry.launched[0][0] == ("drain", INSTANCE_ID)


def test_show_config(monkeypatch):
    monkeypatch.setenv("DB_PATH", "/tmp/ecs-deploy-test.db")
    from ecs_deploy.config.settings import get_settings
    get_settings.cache_clear()

    result = CliRunner().invoke(cli, ["show-config"])

    get_settings.cache_clear()
    assert result.exit_code == 0
    assert "Database: /tmp/ecs-deploy-test.db" in result.output
