"""
Controller facade wiring the store, the AWS wrappers, the resource cache
and the three engines together. Entry points (CLI, worker, Lambda handler)
talk to this class only.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from database.nosql_adapter import NoSQLAdapter

from .aws.alb import LoadBalancer
from .aws.autoscaling import AutoScalingPlatform
from .aws.ecs import ECSPlatform, RunningService, RunningTask, TaskDefinition
from .aws.iam import IAMProvisioner
from .config.settings import Settings, get_settings
from .deployer import DeploymentOrchestrator, parse_deploy_spec
from .drain import DrainCoordinator
from .errors import NotFound
from .events import CapacityChangeEvent, LifecycleEvent, parse_event
from .resource_cache import ResourceCache
from .scaling import ScalingDecision, ScalingEngine
from .schemas import DeploymentRecord, DeploymentSpec, DeployResult, ServiceRecord, utcnow
from .store import ServiceStore
from .watchers import WatcherRegistry

logger = logging.getLogger(__name__)


class Controller:

    def __init__(self, store: ServiceStore, ecs: ECSPlatform, autoscaling: AutoScalingPlatform,
                 iam: IAMProvisioner, settings: Settings = None, registry: WatcherRegistry = None,
                 load_balancer_factory=LoadBalancer, clock=utcnow, sleep=None):
        self.settings = settings or get_settings()
        self.store = store
        self.ecs = ecs
        self.autoscaling = autoscaling
        self.registry = registry or WatcherRegistry()
        self.clock = clock
        self.load_balancer_factory = load_balancer_factory
        self.cache = ResourceCache(store, ecs, self.settings, clock=clock)
        self.deployer = DeploymentOrchestrator(
            store, ecs, iam, registry=self.registry, settings=self.settings,
            load_balancer_factory=load_balancer_factory,
        )
        self.scaling = ScalingEngine(store, self.cache, autoscaling, self.settings)
        drain_kwargs = {'sleep': sleep} if sleep is not None else {}
        self.drain = DrainCoordinator(
            store, ecs, autoscaling, self.cache, registry=self.registry, settings=self.settings, **drain_kwargs
        )

    @classmethod
    def from_settings(cls, settings: Settings = None) -> "Controller":
        """Build a controller against real AWS clients and the configured database"""
        settings = settings or get_settings()
        adapter = NoSQLAdapter(settings.db_path)
        adapter.init_collections()
        return cls(
            store=ServiceStore(adapter),
            ecs=ECSPlatform(settings=settings),
            autoscaling=AutoScalingPlatform(),
            iam=IAMProvisioner(settings=settings),
            settings=settings,
        )

    # ==========================================
    # Deployments
    # ==========================================

    def deploy(self, service_name: str, data: Dict[str, Any]) -> DeployResult:
        spec = parse_deploy_spec(data, service_name)
        return self.deployer.deploy(service_name, spec)

    def deploy_spec(self, service_name: str, spec: DeploymentSpec) -> DeployResult:
        return self.deployer.deploy(service_name, spec)

    def redeploy(self, service_name: str, time: str) -> DeployResult:
        return self.deployer.redeploy(service_name, time)

    def rollback(self, service_name: str) -> str:
        cluster_name = self.store.get_cluster_name(service_name)
        return self.deployer.rollback(cluster_name, service_name)

    def get_deploys(self, days: int = 31, limit: int = 20) -> List[DeploymentRecord]:
        """Deployments of all services in the last days, newest first"""
        return self.store.get_deploys(self.clock() - timedelta(days=days), limit=limit)

    def get_deploys_for_service(self, service_name: str, limit: int = 20) -> List[DeploymentRecord]:
        return self.store.get_deploys_for_service(service_name, limit=limit)

    def get_deployment_status(self, service_name: str, time: str) -> DeployResult:
        record = self.store.get_deployment(service_name, time)
        return DeployResult(
            service_name=record.service_name,
            cluster_name=record.cluster_name,
            task_definition_arn=record.task_definition_arn,
            deployment_time=record.time,
            status=record.status,
            deploy_error=record.deploy_error,
        )

    def get_services(self) -> List[ServiceRecord]:
        return self.store.get_services()

    def scale_service(self, service_name: str, desired_count: int) -> None:
        """Pin the task count of a service"""
        cluster_name = self.store.get_cluster_name(service_name)
        self.store.set_scaling_property(service_name, desired_count)
        self.ecs.manual_scale_service(cluster_name, service_name, desired_count)

    # ==========================================
    # Live service state
    # ==========================================

    def describe_services(self) -> List[RunningService]:
        """Platform view of every known service, one describe batch per cluster"""
        clusters: Dict[str, List[str]] = {}
        for service in self.store.get_services():
            clusters.setdefault(service.cluster_name, []).append(service.service_name)
        running_services = []
        for cluster_name, service_names in clusters.items():
            running_services += self.ecs.describe_services(cluster_name, service_names)
        return running_services

    def describe_service(self, service_name: str) -> RunningService:
        cluster_name = self.store.get_cluster_name(service_name)
        return self.ecs.describe_service(cluster_name, service_name, show_tasks=True)

    def list_tasks(self, service_name: str) -> List[RunningTask]:
        """Running and stopped tasks of the service's task definition family"""
        cluster_name = self.store.get_cluster_name(service_name)
        task_arns = self.ecs.list_tasks(cluster_name, service_name, "RUNNING", filter_by="family")
        task_arns += self.ecs.list_tasks(cluster_name, service_name, "STOPPED", filter_by="family")
        return self.ecs.describe_tasks(cluster_name, task_arns)

    def describe_task_definition(self, service_name: str) -> TaskDefinition:
        cluster_name = self.store.get_cluster_name(service_name)
        return self.ecs.describe_task_definition(self.ecs.get_task_definition(cluster_name, service_name))

    def delete_service(self, service_name: str) -> None:
        """Remove a service from its cluster along with its routing.

        The deployment history stays in the store.
        """
        service = self.store.get_service(service_name)
        if service is None:
            raise NotFound(f"Service {service_name} not found")
        try:
            self.ecs.delete_service(service.cluster_name, service_name)
        except NotFound:
            logger.info(f"Service {service_name} already gone from {service.cluster_name}")
        if service.listeners:
            alb = self.load_balancer_factory(service.cluster_name)
            target_group_arn = alb.get_target_group_arn(service_name)
            alb.delete_rules_for_target(target_group_arn)
            alb.delete_target_group(target_group_arn)
        self.store.delete_service(service_name)
        logger.info(f"Deleted service {service_name}")

    # ==========================================
    # Platform events
    # ==========================================

    def process_ecs_event(self, event: CapacityChangeEvent) -> ScalingDecision:
        return self.scaling.process_capacity_event(event)

    def process_lifecycle_event(self, event: LifecycleEvent) -> str:
        return self.drain.process_lifecycle_event(event)

    def process_event(self, payload: Any) -> Optional[Any]:
        """Parse a raw or wrapped event and hand it to the matching engine"""
        event = parse_event(payload)
        if isinstance(event, CapacityChangeEvent):
            logger.info(f"Capacity change on {event.cluster_arn} for {event.instance_id}")
            return self.process_ecs_event(event)
        logger.info(f"Termination lifecycle action for {event.instance_id}")
        return self.process_lifecycle_event(event)

    # ==========================================
    # Restart
    # ==========================================

    def resume(self) -> Dict[str, int]:
        """Re-attach deployment and drain watchers after a restart"""
        deployments = self.deployer.resume()
        drains = self.drain.resume()
        logger.info(f"Finished controller resume: {deployments} deployment watchers, {drains} drain watchers")
        return {'deployments': deployments, 'drains': drains}
