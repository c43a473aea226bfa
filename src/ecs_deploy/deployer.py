"""
Deployment orchestration: provisioning, service create-or-update,
background stability verification and rollback.
"""

import logging
import math
import threading
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from .aws.alb import LoadBalancer
from .aws.ecs import ECSPlatform, RunningService
from .aws.iam import IAMProvisioner
from .config.settings import Settings, get_settings
from .errors import ControllerError, InvalidSpec, NoRollbackTarget, RolloutFailed
from .schemas import (
    DeploymentRecord,
    DeploymentSpec,
    DeploymentStatus,
    DeployResult,
    ServiceRecord,
)
from .store import ServiceStore
from .utils.decorators import log_execution_time
from .watchers import WatcherRegistry

logger = logging.getLogger(__name__)

MISSING_MEMORY_MESSAGE = ("At least one of 'memory' or 'memoryReservation' must be specified "
                          "within the container specification.")


def parse_deploy_spec(data: Dict[str, Any], service_name: str = None) -> DeploymentSpec:
    """Build a spec from request JSON; unset delay and stickiness duration default to -1"""
    if not isinstance(data, dict):
        raise InvalidSpec("Deploy spec must be a JSON object")
    data = dict(data)
    if service_name:
        data['serviceName'] = service_name
    data.setdefault('deregistrationDelay', -1)
    stickiness = dict(data.get('stickiness') or {})
    stickiness.setdefault('duration', -1)
    data['stickiness'] = stickiness
    try:
        return DeploymentSpec.model_validate(data)
    except ValidationError as e:
        raise InvalidSpec(f"Invalid deploy spec: {e}") from e


def validate_spec(spec: DeploymentSpec) -> None:
    if not spec.containers:
        raise InvalidSpec("At least one container must be specified")
    for container in spec.containers:
        if container.memory == 0 and container.memory_reservation == 0:
            raise InvalidSpec(MISSING_MEMORY_MESSAGE)


def max_wait_minutes(spec: DeploymentSpec, default_minutes: int = 15) -> int:
    """Stability timeout: ten minutes per started ten minutes of grace period, plus ten"""
    grace = spec.health_check.grace_period_seconds
    if grace > 0:
        return (1 + math.ceil(grace / 600)) * 10
    return default_minutes


def check_rollout(record: DeploymentRecord, running_service: RunningService) -> None:
    """Raise RolloutFailed when the service does not run the record's task definition"""
    if len(running_service.deployments) != 1:
        raise RolloutFailed("Deployment failed: deployment was still running after 10 minutes")
    if running_service.deployments[0].task_definition != record.task_definition_arn:
        raise RolloutFailed("Deployment failed: Still running old task definition")
    if not running_service.tasks:
        raise RolloutFailed("Deployment failed: no tasks running")
    for task in running_service.tasks:
        if task.task_definition_arn == record.task_definition_arn and task.last_status != "RUNNING":
            raise RolloutFailed(
                f"Deployment failed: found task with taskdefinition {task.task_definition_arn} "
                f"and status {task.last_status} (expected RUNNING)"
            )
        logger.debug(f"Found task with taskdefinition {task.task_definition_arn} and status {task.last_status}")


class DeploymentOrchestrator:
    """Rolls out new task definitions and keeps deployment records consistent.

    Per service at most one record is running: a deploy aborts the running
    record before writing its own. Watchers only write verdicts onto records
    that are still running.
    """

    def __init__(self, store: ServiceStore, ecs: ECSPlatform, iam: IAMProvisioner,
                 registry: WatcherRegistry = None, settings: Settings = None,
                 load_balancer_factory: Callable[[str], LoadBalancer] = LoadBalancer):
        self.store = store
        self.ecs = ecs
        self.iam = iam
        self.registry = registry or WatcherRegistry()
        self.settings = settings or get_settings()
        self.load_balancer_factory = load_balancer_factory
        self._service_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _service_lock(self, service_name: str) -> threading.Lock:
        with self._locks_guard:
            return self._service_locks.setdefault(service_name, threading.Lock())

    # ==========================================
    # Deploy
    # ==========================================

    @log_execution_time
    def deploy(self, service_name: str, spec: DeploymentSpec) -> DeployResult:
        validate_spec(spec)
        if spec.service_name != service_name:
            spec = spec.model_copy(update={'service_name': service_name})

        with self._service_lock(service_name):
            last = self.store.get_last_deploy(service_name)

            role_arn = self.iam.ensure_task_role(service_name)
            account_id = ""
            if any(not c.container_uri for c in spec.containers):
                account_id = self.iam.get_account_id()
            task_definition_arn = self.ecs.register_task_definition(service_name, role_arn, spec, account_id)

            if not self.ecs.service_exists(spec.cluster, service_name):
                logger.info(f"Service {service_name} not found, creating...")
                self._create_service(service_name, spec, task_definition_arn)
            else:
                self._update_service(service_name, spec, task_definition_arn, last)

            for running in self.store.get_running_deploys(service_name):
                self.store.set_deployment_status(running, DeploymentStatus.ABORTED)

            record = self.store.new_deployment(service_name, task_definition_arn, spec)

        self.launch(record)
        return DeployResult(
            service_name=service_name,
            cluster_name=spec.cluster,
            task_definition_arn=task_definition_arn,
            deployment_time=record.time,
            status=record.status,
        )

    def redeploy(self, service_name: str, time: str) -> DeployResult:
        """Deploy the spec stored in an earlier record again"""
        record = self.store.get_deployment(service_name, time)
        logger.info(f"Redeploying {service_name} from {time}")
        return self.deploy(service_name, record.deploy_data)

    def _create_service(self, service_name: str, spec: DeploymentSpec, task_definition_arn: str) -> None:
        target_group_arn = None
        listeners: List[str] = []
        if spec.has_load_balancer:
            alb = self.load_balancer_factory(spec.cluster)
            target_group_arn = alb.create_target_group(service_name, spec)
            if spec.deregistration_delay != -1 or spec.stickiness.enabled:
                alb.modify_target_group_attributes(target_group_arn, spec)
            listeners = alb.create_rules_for_target(service_name, spec, target_group_arn)

        self.iam.ensure_service_role()
        self.ecs.create_service(service_name, task_definition_arn, spec, target_group_arn)

        cpu_reservation, cpu_limit, memory_reservation, memory_limit = spec.container_limits()
        self.store.create_service(ServiceRecord(
            service_name=service_name,
            cluster_name=spec.cluster,
            listeners=listeners,
            cpu_reservation=cpu_reservation,
            cpu_limit=cpu_limit,
            memory_reservation=memory_reservation,
            memory_limit=memory_limit,
        ))

    def _update_service(self, service_name: str, spec: DeploymentSpec, task_definition_arn: str,
                        last: Optional[DeploymentRecord]) -> None:
        if last is not None:
            previous = last.deploy_data
            if spec.has_load_balancer:
                alb = self.load_balancer_factory(spec.cluster)
                target_group_arn = alb.get_target_group_arn(service_name)
                if previous.health_check != spec.health_check:
                    logger.info(f"Updating health check of {service_name}")
                    alb.update_health_check(target_group_arn, spec.health_check)
                if (previous.stickiness != spec.stickiness
                        or previous.deregistration_delay != spec.deregistration_delay):
                    alb.modify_target_group_attributes(target_group_arn, spec)
            if previous.container_limits() != spec.container_limits():
                self._store_limits(service_name, spec)
        elif self.store.get_service(service_name) is None:
            self._store_limits(service_name, spec)

        self.ecs.update_service(spec.cluster, service_name, task_definition_arn,
                                spec.health_check.grace_period_seconds)

    def _store_limits(self, service_name: str, spec: DeploymentSpec) -> None:
        limits = spec.container_limits()
        if self.store.get_service(service_name) is None:
            self.store.create_service(ServiceRecord(
                service_name=service_name,
                cluster_name=spec.cluster,
                cpu_reservation=limits[0],
                cpu_limit=limits[1],
                memory_reservation=limits[2],
                memory_limit=limits[3],
            ))
        else:
            self.store.update_service_limits(service_name, *limits)

    # ==========================================
    # Stability watcher
    # ==========================================

    def launch(self, record: DeploymentRecord) -> bool:
        return self.registry.launch(
            ("deployment", record.service_name, record.time), self.verify_stable, record
        )

    def verify_stable(self, record: DeploymentRecord) -> DeploymentStatus:
        """Wait for the rollout of record and write its verdict.

        A record that is no longer running is left alone. Returns the stored
        status afterwards.
        """
        current = self.store.reload(record)
        if current.status != DeploymentStatus.RUNNING:
            logger.info(f"Deployment {record.deployment_id} is already {current.status.value}, nothing to verify")
            return current.status

        spec = record.deploy_data
        minutes = max_wait_minutes(spec, self.settings.default_deploy_timeout_minutes)
        stable = self.ecs.wait_until_stable(spec.cluster, record.service_name, minutes)
        try:
            running_service = self.ecs.describe_service(
                spec.cluster, record.service_name, show_tasks=True, show_stopped_tasks=True
            )
            check_rollout(record, running_service)
            if not stable:
                raise RolloutFailed("Deployment timed out")
        except RolloutFailed as e:
            self._fail(record, e.reason)
        except ControllerError as e:
            self._fail(record, f"Deployment failed: {str(e)}")
        else:
            self.store.set_deployment_status(record, DeploymentStatus.SUCCESS)
        return self.store.reload(record).status

    def _fail(self, record: DeploymentRecord, reason: str) -> None:
        logger.info(f"Deployment {record.deployment_id}: {reason}")
        if not self.store.set_deployment_status(record, DeploymentStatus.FAILED, reason):
            return
        try:
            self.rollback(record.cluster_name, record.service_name)
        except ControllerError as e:
            logger.error(f"Rollback of {record.service_name} failed: {str(e)}")

    # ==========================================
    # Rollback / resume
    # ==========================================

    def rollback(self, cluster_name: str, service_name: str) -> str:
        """Re-apply the task definition of the latest successful deployment.

        The preceding record is tried first, then the most recent
        rollback_history_limit records. No deployment record is written.
        """
        logger.info(f"Starting rollback of {service_name}")
        previous = self.store.get_second_to_last_deploy(service_name)
        if previous is not None and previous.status == DeploymentStatus.SUCCESS:
            candidates = [previous]
        else:
            logger.info("Rollback: previous deploy was not successful")
            candidates = self.store.get_deploys_for_service(
                service_name, limit=self.settings.rollback_history_limit
            )
            logger.info(f"Rollback: checking last {len(candidates)} deploys")

        for candidate in candidates:
            if candidate.status == DeploymentStatus.SUCCESS:
                logger.info(f"Rollback: rolling back to {candidate.task_definition_arn}")
                self.ecs.update_service(
                    cluster_name, service_name, candidate.task_definition_arn,
                    candidate.deploy_data.health_check.grace_period_seconds,
                )
                return candidate.task_definition_arn
        raise NoRollbackTarget("Could not rollback, no stable version found")

    def resume(self) -> int:
        """Relaunch watchers for every running record"""
        running = self.store.get_running_deploys()
        for record in running:
            logger.info(f"Resuming stability watcher of {record.deployment_id}")
            self.launch(record)
        return len(running)
