"""
Domain models for deployments, services and cluster capacity.

Deploy specs arrive as camelCase JSON from CI pipelines and are stored
verbatim inside each deployment record, so every model accepts both the
camelCase alias and the python field name.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .errors import StateError

DEPLOY_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class DeploymentStatus(str, Enum):
    """Lifecycle of one deploy attempt"""
    RUNNING = 'running'
    SUCCESS = 'success'
    FAILED = 'failed'
    ABORTED = 'aborted'


class InstanceStatus(str, Enum):
    """Scheduling state of a container instance as seen by the controller"""
    ACTIVE = 'ACTIVE'
    DRAINING = 'DRAINING'


class ScalingAction(str, Enum):
    NONE = 'none'
    UP = 'up'
    DOWN = 'down'


# Allowed status transitions. Terminal states have no successors.
DEPLOYMENT_TRANSITIONS: Dict[DeploymentStatus, Set[DeploymentStatus]] = {
    DeploymentStatus.RUNNING: {DeploymentStatus.SUCCESS, DeploymentStatus.FAILED, DeploymentStatus.ABORTED},
    DeploymentStatus.SUCCESS: set(),
    DeploymentStatus.FAILED: set(),
    DeploymentStatus.ABORTED: set(),
}

INSTANCE_TRANSITIONS: Dict[InstanceStatus, Set[InstanceStatus]] = {
    InstanceStatus.ACTIVE: {InstanceStatus.DRAINING},
    InstanceStatus.DRAINING: set(),
}


def check_deployment_transition(current: DeploymentStatus, new: DeploymentStatus) -> None:
    if new not in DEPLOYMENT_TRANSITIONS[current]:
        raise StateError(f"Invalid deployment transition from {current.value} to {new.value}")


def check_instance_transition(current: InstanceStatus, new: InstanceStatus) -> None:
    if new not in INSTANCE_TRANSITIONS[current]:
        raise StateError(f"Invalid instance transition from {current.value} to {new.value}")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_deploy_time(dt: datetime) -> str:
    """Fixed-width UTC timestamp, so string order equals time order"""
    return dt.astimezone(timezone.utc).strftime(DEPLOY_TIME_FORMAT)


def parse_deploy_time(value: str) -> datetime:
    return datetime.strptime(value, DEPLOY_TIME_FORMAT).replace(tzinfo=timezone.utc)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ==========================================
# Deploy spec
# ==========================================

class ContainerSpec(_CamelModel):
    """One container of a task definition"""
    container_name: str = Field(..., alias="containerName", min_length=1)
    container_image: str = Field("", alias="containerImage")
    container_tag: str = Field("", alias="containerTag")
    container_uri: str = Field("", alias="containerURI")
    container_port: int = Field(0, alias="containerPort", ge=0)
    container_command: List[str] = Field(default_factory=list, alias="containerCommand")
    memory: int = Field(0, ge=0, description="Hard memory limit in MiB")
    memory_reservation: int = Field(0, alias="memoryReservation", ge=0, description="Soft memory limit in MiB")
    cpu: int = Field(0, ge=0, description="CPU units hard limit")
    cpu_reservation: int = Field(0, alias="cpuReservation", ge=0)
    essential: bool = Field(False)


class HealthCheck(_CamelModel):
    healthy_threshold: int = Field(0, alias="healthyThreshold")
    unhealthy_threshold: int = Field(0, alias="unhealthyThreshold")
    path: str = Field("")
    port: str = Field("")
    protocol: str = Field("")
    interval: int = Field(0)
    matcher: str = Field("")
    timeout: int = Field(0)
    grace_period_seconds: int = Field(0, alias="gracePeriodSeconds", ge=0)


class Stickiness(_CamelModel):
    enabled: bool = Field(False)
    duration: int = Field(-1, description="Cookie duration in seconds, -1 when unset")


class RuleCondition(_CamelModel):
    listeners: List[str] = Field(default_factory=list, description="Listener protocols, e.g. http, https")
    path_pattern: str = Field("", alias="pathPattern")
    hostname: str = Field("")


class NetworkConfiguration(_CamelModel):
    subnets: List[str] = Field(default_factory=list)
    security_groups: List[str] = Field(default_factory=list, alias="securityGroups")
    assign_public_ip: str = Field("", alias="assignPublicIp")


class PlacementConstraint(_CamelModel):
    expression: str = Field("")
    type: str = Field("")


class DeploymentSpec(_CamelModel):
    """Immutable description of one rollout"""
    service_name: str = Field("", alias="serviceName")
    cluster: str = Field(..., min_length=1)
    service_port: int = Field(0, alias="servicePort")
    service_protocol: str = Field("HTTP", alias="serviceProtocol")
    desired_count: int = Field(1, alias="desiredCount", ge=0)
    minimum_healthy_percent: int = Field(0, alias="minimumHealthyPercent", ge=0)
    maximum_percent: int = Field(0, alias="maximumPercent", ge=0)
    containers: List[ContainerSpec] = Field(default_factory=list)
    health_check: HealthCheck = Field(default_factory=HealthCheck, alias="healthCheck")
    rule_conditions: List[RuleCondition] = Field(default_factory=list, alias="ruleConditions")
    deregistration_delay: int = Field(-1, alias="deregistrationDelay", description="Seconds, -1 when unset")
    stickiness: Stickiness = Field(default_factory=Stickiness)
    network_mode: str = Field("", alias="networkMode")
    network_configuration: NetworkConfiguration = Field(default_factory=NetworkConfiguration, alias="networkConfiguration")
    launch_type: str = Field("", alias="launchType")
    placement_constraints: List[PlacementConstraint] = Field(default_factory=list, alias="placementConstraints")

    @property
    def has_load_balancer(self) -> bool:
        return self.service_protocol.lower() != "none"

    def container_limits(self) -> Tuple[int, int, int, int]:
        """Aggregate (cpu reservation, cpu limit, memory reservation, memory limit).

        A container without a reservation reserves its hard limit.
        """
        cpu_reservation = cpu_limit = memory_reservation = memory_limit = 0
        for c in self.containers:
            if c.memory_reservation == 0:
                memory_reservation += c.memory
            else:
                memory_reservation += c.memory_reservation
            memory_limit += c.memory
            if c.cpu_reservation == 0:
                cpu_reservation += c.cpu
            else:
                cpu_reservation += c.cpu_reservation
            cpu_limit += c.cpu
        return cpu_reservation, cpu_limit, memory_reservation, memory_limit

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


# ==========================================
# Persisted records
# ==========================================

class DeploymentRecord(BaseModel):
    """One deploy attempt; records are never deleted"""
    service_name: str = Field(..., min_length=1)
    cluster_name: str = Field(..., min_length=1)
    time: str = Field(..., description="Creation time, fixed-width UTC, doubles as version key")
    task_definition_arn: str = Field(...)
    deploy_data: DeploymentSpec = Field(...)
    status: DeploymentStatus = Field(DeploymentStatus.RUNNING)
    deploy_error: Optional[str] = Field(None, description="Failure reason")
    status_updated_at: Optional[str] = Field(None)

    @property
    def deployment_id(self) -> str:
        return make_deployment_id(self.service_name, self.time)

    def to_document(self) -> dict:
        document = self.model_dump(mode="json")
        document["deployment_id"] = self.deployment_id
        document["deploy_data"] = self.deploy_data.to_document()
        return document

    @classmethod
    def from_document(cls, document: dict) -> "DeploymentRecord":
        data = {k: v for k, v in document.items() if k != "deployment_id"}
        return cls.model_validate(data)


def make_deployment_id(service_name: str, time: str) -> str:
    return f"{service_name}/{time}"


class ServiceRecord(BaseModel):
    """One managed service and its aggregate resource shape"""
    service_name: str = Field(..., min_length=1)
    cluster_name: str = Field(..., min_length=1)
    listeners: List[str] = Field(default_factory=list)
    cpu_reservation: int = Field(0)
    cpu_limit: int = Field(0)
    memory_reservation: int = Field(0)
    memory_limit: int = Field(0)
    desired_count: Optional[int] = Field(None, description="Manually requested task count")


class InstanceResources(BaseModel):
    """Free capacity of one container instance"""
    instance_id: str = Field(..., min_length=1)
    cluster_name: str = Field(...)
    availability_zone: str = Field("")
    free_cpu: int = Field(0)
    free_memory: int = Field(0)
    status: InstanceStatus = Field(InstanceStatus.ACTIVE)


class ClusterResourceSnapshot(BaseModel):
    cluster_name: str = Field(..., min_length=1)
    instances: List[InstanceResources] = Field(default_factory=list)
    snapshot_at: Optional[datetime] = Field(None, description="Time of the last full rebuild")
    last_scaling_action: ScalingAction = Field(ScalingAction.NONE, description="Last issued fleet mutation")
    last_scaling_at: Optional[datetime] = Field(None)
    last_decision: ScalingAction = Field(ScalingAction.NONE, description="Outcome of the latest decision cycle")
    updated_at: Optional[datetime] = Field(None)

    def find_instance(self, instance_id: str) -> Optional[InstanceResources]:
        for instance in self.instances:
            if instance.instance_id == instance_id:
                return instance
        return None

    def to_document(self) -> dict:
        return self.model_dump(mode="json")


class DeployResult(BaseModel):
    """Returned to the caller of deploy, redeploy and status lookups"""
    service_name: str
    cluster_name: str
    task_definition_arn: str
    deployment_time: str
    status: DeploymentStatus = DeploymentStatus.RUNNING
    deploy_error: Optional[str] = None
