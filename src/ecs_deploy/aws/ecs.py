"""ECS platform calls used by the deployment orchestrator, the scaling engine and the drain coordinator."""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from botocore.exceptions import ClientError, WaiterError

from ..config.settings import Settings, get_settings
from ..errors import NotFound, PlatformError
from ..schemas import DeploymentSpec, InstanceResources, InstanceStatus
from ..utils.decorators import platform_retry
from .utils import chunks, get_ec2_client, get_ecs_client, platform_error

logger = logging.getLogger(__name__)

AVAILABILITY_ZONE_ATTRIBUTE = "ecs.availability-zone"
DESCRIBE_SERVICES_BATCH = 10
DESCRIBE_TASKS_BATCH = 100
DESCRIBE_CONTAINER_INSTANCES_BATCH = 100


@dataclass
class ServiceDeployment:
    """One deployment generation of an ECS service (PRIMARY, ACTIVE, ...)"""
    status: str
    task_definition: str
    desired_count: int = 0
    running_count: int = 0
    pending_count: int = 0


@dataclass
class RunningTask:
    task_arn: str
    task_definition_arn: str
    last_status: str
    desired_status: str = ""
    container_instance_arn: str = ""


@dataclass
class RunningService:
    service_name: str
    cluster_name: str
    status: str
    desired_count: int = 0
    running_count: int = 0
    pending_count: int = 0
    deployments: List[ServiceDeployment] = field(default_factory=list)
    tasks: List[RunningTask] = field(default_factory=list)


@dataclass
class ContainerDefinition:
    name: str
    essential: bool = False


@dataclass
class TaskDefinition:
    family: str
    revision: int
    task_definition_arn: str = ""
    execution_role_arn: str = ""
    container_definitions: List[ContainerDefinition] = field(default_factory=list)


@dataclass
class ContainerInstance:
    container_instance_arn: str
    ec2_instance_id: str
    status: str
    running_tasks_count: int = 0
    pending_tasks_count: int = 0
    availability_zone: str = ""
    remaining_resources: List[Dict[str, Any]] = field(default_factory=list)
    registered_resources: List[Dict[str, Any]] = field(default_factory=list)


def capacity_from_resources(resources: List[Dict[str, Any]]) -> Tuple[int, int]:
    """Extract (cpu, memory) from ECS resource entries.

    Only INTEGER and LONG entries named CPU or MEMORY are read; any other
    type for those names is rejected.
    """
    cpu = memory = 0
    for resource in resources or []:
        name = resource.get('name')
        if name not in ("CPU", "MEMORY"):
            continue
        resource_type = resource.get('type')
        if resource_type not in ("INTEGER", "LONG"):
            raise ValueError(f"{name} returned wrong type ({resource_type})")
        value = None
        for key in ('integerValue', 'longValue', 'value'):
            if resource.get(key) is not None:
                value = resource[key]
                break
        if value is None:
            value = 0
        if name == "CPU":
            cpu = int(value)
        else:
            memory = int(value)
    return cpu, memory


def availability_zone_from_attributes(attributes: List[Dict[str, Any]]) -> str:
    for attribute in attributes or []:
        if attribute.get('name') == AVAILABILITY_ZONE_ATTRIBUTE:
            return attribute.get('value', "")
    return ""


def cluster_name_from_arn(cluster_arn: str) -> str:
    """arn:aws:ecs:region:account:cluster/<name> -> <name>"""
    parts = cluster_arn.split("/")
    if len(parts) != 2:
        raise ValueError(f"Could not determine cluster name from arn: {cluster_arn}")
    return parts[1]


class ECSPlatform:
    """Wrapper around the ECS and EC2 APIs"""

    def __init__(self, ecs_client=None, ec2_client=None, settings: Settings = None):
        self.settings = settings or get_settings()
        self.ecs_client = ecs_client or get_ecs_client()
        self._ec2_client = ec2_client

    @property
    def ec2_client(self):
        if self._ec2_client is None:
            self._ec2_client = get_ec2_client()
        return self._ec2_client

    # ==========================================
    # Task definitions
    # ==========================================

    def image_uri(self, container, account_id: str) -> str:
        if container.container_uri:
            return container.container_uri
        image = container.container_image or container.container_name
        uri = f"{account_id}.dkr.ecr.{self.settings.aws_region}.amazonaws.com/{image}"
        if container.container_tag:
            uri += f":{container.container_tag}"
        return uri

    def build_task_definition(self, service_name: str, role_arn: str, spec: DeploymentSpec,
                              account_id: str) -> Dict[str, Any]:
        """Build the RegisterTaskDefinition request for a deploy spec"""
        task_definition = {
            'family': service_name,
            'taskRoleArn': role_arn,
            'containerDefinitions': [],
        }
        if spec.network_mode:
            task_definition['networkMode'] = spec.network_mode
        if spec.placement_constraints:
            constraints = []
            for pc in spec.placement_constraints:
                constraint = {}
                if pc.expression:
                    constraint['expression'] = pc.expression
                if pc.type:
                    constraint['type'] = pc.type
                constraints.append(constraint)
            task_definition['placementConstraints'] = constraints

        for container in spec.containers:
            definition = {
                'name': container.container_name,
                'image': self.image_uri(container, account_id),
            }
            if container.container_port > 0:
                definition['portMappings'] = [{'containerPort': container.container_port}]
            if container.container_command:
                definition['command'] = list(container.container_command)
            if self.settings.cloudwatch_logs_enabled:
                definition['logConfiguration'] = {
                    'logDriver': 'awslogs',
                    'options': {
                        'awslogs-group': self.settings.cloudwatch_log_group,
                        'awslogs-region': self.settings.aws_region,
                        'awslogs-stream-prefix': container.container_name,
                    },
                }
            if container.memory > 0:
                definition['memory'] = container.memory
            if container.memory_reservation > 0:
                definition['memoryReservation'] = container.memory_reservation
            if container.cpu > 0:
                definition['cpu'] = container.cpu
            elif self.settings.default_container_cpu_limit:
                definition['cpu'] = self.settings.default_container_cpu_limit
            if container.essential:
                definition['essential'] = True
            if self.settings.paramstore_enabled:
                definition['environment'] = [
                    {'name': 'AWS_REGION', 'value': self.settings.aws_region},
                    {'name': 'AWS_ENV_PATH', 'value': f"{self.settings.paramstore_path_prefix}{service_name}/"},
                ]
            task_definition['containerDefinitions'].append(definition)
        return task_definition

    def register_task_definition(self, service_name: str, role_arn: str, spec: DeploymentSpec,
                                 account_id: str) -> str:
        request = self.build_task_definition(service_name, role_arn, spec, account_id)
        logger.debug(f"Registering task definition: {request}")
        try:
            response = self.ecs_client.register_task_definition(**request)
        except ClientError as e:
            raise platform_error(f"Register task definition for {service_name}", e) from e
        arn = response['taskDefinition']['taskDefinitionArn']
        logger.info(f"Registered task definition {arn}")
        return arn

    def describe_task_definition(self, task_definition: str) -> TaskDefinition:
        """Family, revision and containers of a task definition name or arn"""
        try:
            response = self.ecs_client.describe_task_definition(taskDefinition=task_definition)
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') == 'ClientException':
                raise NotFound(f"Task definition {task_definition} not found") from e
            raise platform_error(f"Describe task definition {task_definition}", e) from e
        definition = response['taskDefinition']
        return TaskDefinition(
            family=definition.get('family', ""),
            revision=definition.get('revision', 0),
            task_definition_arn=definition.get('taskDefinitionArn', ""),
            execution_role_arn=definition.get('executionRoleArn', ""),
            container_definitions=[
                ContainerDefinition(name=cd.get('name', ""), essential=cd.get('essential', False))
                for cd in definition.get('containerDefinitions', [])
            ],
        )

    def get_task_definition(self, cluster: str, service_name: str) -> str:
        """Task definition of the PRIMARY deployment of a service"""
        for deployment in self.describe_service(cluster, service_name).deployments:
            if deployment.status == "PRIMARY":
                return deployment.task_definition
        raise NotFound(f"No task definition found for {service_name}")

    # ==========================================
    # Services
    # ==========================================

    @platform_retry
    def service_exists(self, cluster: str, service_name: str) -> bool:
        """An INACTIVE (deleted) service counts as absent"""
        try:
            response = self.ecs_client.describe_services(cluster=cluster, services=[service_name])
        except ClientError as e:
            raise platform_error(f"Describe service {service_name}", e) from e
        services = response.get('services', [])
        if not services:
            return False
        return not (len(services) == 1 and services[0].get('status') == "INACTIVE")

    def create_service(self, service_name: str, task_definition_arn: str, spec: DeploymentSpec,
                       target_group_arn: Optional[str] = None) -> None:
        if not spec.containers:
            raise PlatformError("No containers defined")

        request = {
            'cluster': spec.cluster,
            'serviceName': service_name,
            'taskDefinition': task_definition_arn,
            'desiredCount': spec.desired_count,
            'placementStrategy': [
                {'type': 'spread', 'field': 'attribute:ecs.availability-zone'},
                {'type': 'binpack', 'field': 'memory'},
            ],
        }
        if spec.has_load_balancer and target_group_arn:
            request['loadBalancers'] = [{
                'targetGroupArn': target_group_arn,
                'containerName': service_name,
                'containerPort': spec.service_port,
            }]

        network = spec.network_configuration
        if spec.network_mode == "awsvpc" and network.subnets:
            if spec.launch_type.upper() == "FARGATE":
                request['launchType'] = "FARGATE"
            request['networkConfiguration'] = {
                'awsvpcConfiguration': {
                    'subnets': list(network.subnets),
                    'securityGroups': list(network.security_groups),
                    'assignPublicIp': network.assign_public_ip or "DISABLED",
                }
            }
        elif spec.has_load_balancer:
            # awsvpc services get a service-linked role instead
            request['role'] = self.settings.ecs_service_role

        deployment_configuration = {}
        if spec.minimum_healthy_percent > 0:
            deployment_configuration['minimumHealthyPercent'] = spec.minimum_healthy_percent
        if spec.maximum_percent > 0:
            deployment_configuration['maximumPercent'] = spec.maximum_percent
        if deployment_configuration:
            request['deploymentConfiguration'] = deployment_configuration

        if spec.health_check.grace_period_seconds > 0:
            request['healthCheckGracePeriodSeconds'] = spec.health_check.grace_period_seconds

        try:
            self.ecs_client.create_service(**request)
        except ClientError as e:
            raise platform_error(f"Create service {service_name}", e) from e
        logger.info(f"Created service {service_name} on cluster {spec.cluster}")

    def update_service(self, cluster: str, service_name: str, task_definition_arn: str,
                       grace_period_seconds: int = 0) -> None:
        request = {
            'cluster': cluster,
            'service': service_name,
            'taskDefinition': task_definition_arn,
        }
        if grace_period_seconds > 0:
            request['healthCheckGracePeriodSeconds'] = grace_period_seconds
        logger.debug(f"Running UpdateService with input: {request}")
        try:
            self.ecs_client.update_service(**request)
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') == 'ServiceNotFoundException':
                raise NotFound(f"Service {service_name} not found on cluster {cluster}") from e
            raise platform_error(f"Update service {service_name}", e) from e
        logger.info(f"Updated service {service_name} to {task_definition_arn}")

    def delete_service(self, cluster: str, service_name: str) -> None:
        """Delete a service without scaling it to zero first"""
        try:
            self.ecs_client.delete_service(cluster=cluster, service=service_name, force=True)
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') == 'ServiceNotFoundException':
                raise NotFound(f"Service {service_name} not found on cluster {cluster}") from e
            raise platform_error(f"Delete service {service_name}", e) from e
        logger.info(f"Deleted service {service_name} from cluster {cluster}")

    def manual_scale_service(self, cluster: str, service_name: str, desired_count: int) -> None:
        logger.info(f"Manually scaling {service_name} to a count of {desired_count}")
        try:
            self.ecs_client.update_service(cluster=cluster, service=service_name, desiredCount=desired_count)
        except ClientError as e:
            raise platform_error(f"Scale service {service_name}", e) from e

    def wait_until_stable(self, cluster: str, service_name: str, max_wait_minutes: int) -> bool:
        """Block until the service is stable. Returns False on timeout or waiter failure."""
        delay = self.settings.waiter_delay_seconds
        max_attempts = max(1, int(max_wait_minutes * 60 / delay))
        logger.info(f"Waiting for service {service_name} on {cluster} to become stable "
                    f"(max {max_wait_minutes} minutes)")
        try:
            self.ecs_client.get_waiter('services_stable').wait(
                cluster=cluster,
                services=[service_name],
                WaiterConfig={'Delay': delay, 'MaxAttempts': max_attempts},
            )
        except WaiterError as e:
            logger.info(f"Service {service_name} did not become stable: {e}")
            return False
        return True

    # ==========================================
    # Describe / list
    # ==========================================

    @platform_retry
    def describe_services(self, cluster: str, service_names: List[str], show_tasks: bool = False,
                          show_stopped_tasks: bool = False) -> List[RunningService]:
        running_services = []
        for batch in chunks(list(service_names), DESCRIBE_SERVICES_BATCH):
            try:
                response = self.ecs_client.describe_services(cluster=cluster, services=batch)
            except ClientError as e:
                raise platform_error(f"Describe services on {cluster}", e) from e
            for service in response.get('services', []):
                running_service = RunningService(
                    service_name=service['serviceName'],
                    cluster_name=cluster,
                    status=service.get('status', ""),
                    desired_count=service.get('desiredCount', 0),
                    running_count=service.get('runningCount', 0),
                    pending_count=service.get('pendingCount', 0),
                    deployments=[
                        ServiceDeployment(
                            status=d.get('status', ""),
                            task_definition=d.get('taskDefinition', ""),
                            desired_count=d.get('desiredCount', 0),
                            running_count=d.get('runningCount', 0),
                            pending_count=d.get('pendingCount', 0),
                        )
                        for d in service.get('deployments', [])
                    ],
                )
                if show_tasks:
                    task_arns = self.list_tasks(cluster, service['serviceName'])
                    if show_stopped_tasks:
                        task_arns += self.list_tasks(cluster, service['serviceName'], desired_status="STOPPED")
                    running_service.tasks = self.describe_tasks(cluster, task_arns)
                running_services.append(running_service)
        return running_services

    def describe_service(self, cluster: str, service_name: str, show_tasks: bool = False,
                         show_stopped_tasks: bool = False) -> RunningService:
        services = self.describe_services(cluster, [service_name], show_tasks, show_stopped_tasks)
        if len(services) != 1:
            raise NotFound(f"Service {service_name} not found on cluster {cluster}")
        return services[0]

    def list_tasks(self, cluster: str, name: str, desired_status: str = "RUNNING",
                   filter_by: str = "service") -> List[str]:
        request = {'cluster': cluster, 'desiredStatus': desired_status}
        if filter_by == "service":
            request['serviceName'] = name
        elif filter_by == "family":
            request['family'] = name
        else:
            raise ValueError(f"Invalid filter_by: {filter_by}")
        task_arns = []
        try:
            for page in self.ecs_client.get_paginator('list_tasks').paginate(**request):
                task_arns.extend(page.get('taskArns', []))
        except ClientError as e:
            raise platform_error(f"List tasks of {name}", e) from e
        return task_arns

    def describe_tasks(self, cluster: str, task_arns: List[str]) -> List[RunningTask]:
        tasks = []
        for batch in chunks(list(task_arns), DESCRIBE_TASKS_BATCH):
            try:
                response = self.ecs_client.describe_tasks(cluster=cluster, tasks=batch)
            except ClientError as e:
                raise platform_error(f"Describe tasks on {cluster}", e) from e
            for task in response.get('tasks', []):
                tasks.append(RunningTask(
                    task_arn=task['taskArn'],
                    task_definition_arn=task.get('taskDefinitionArn', ""),
                    last_status=task.get('lastStatus', ""),
                    desired_status=task.get('desiredStatus', ""),
                    container_instance_arn=task.get('containerInstanceArn', ""),
                ))
        return tasks

    # ==========================================
    # Container instances
    # ==========================================

    @platform_retry
    def list_container_instances(self, cluster: str) -> List[str]:
        arns = []
        try:
            for page in self.ecs_client.get_paginator('list_container_instances').paginate(cluster=cluster):
                arns.extend(page.get('containerInstanceArns', []))
        except ClientError as e:
            raise platform_error(f"List container instances of {cluster}", e) from e
        return arns

    @platform_retry
    def describe_container_instances(self, cluster: str, arns: List[str]) -> List[ContainerInstance]:
        instances = []
        for batch in chunks(list(arns), DESCRIBE_CONTAINER_INSTANCES_BATCH):
            try:
                response = self.ecs_client.describe_container_instances(cluster=cluster, containerInstances=batch)
            except ClientError as e:
                raise platform_error(f"Describe container instances of {cluster}", e) from e
            for ci in response.get('containerInstances', []):
                instances.append(ContainerInstance(
                    container_instance_arn=ci['containerInstanceArn'],
                    ec2_instance_id=ci.get('ec2InstanceId', ""),
                    status=ci.get('status', ""),
                    running_tasks_count=ci.get('runningTasksCount', 0),
                    pending_tasks_count=ci.get('pendingTasksCount', 0),
                    availability_zone=availability_zone_from_attributes(ci.get('attributes', [])),
                    remaining_resources=ci.get('remainingResources', []),
                    registered_resources=ci.get('registeredResources', []),
                ))
        return instances

    def get_container_instances(self, cluster: str) -> List[ContainerInstance]:
        arns = self.list_container_instances(cluster)
        if not arns:
            return []
        return self.describe_container_instances(cluster, arns)

    def get_free_resources(self, cluster: str) -> List[InstanceResources]:
        """Free capacity of every ACTIVE or DRAINING container instance of a cluster"""
        resources = []
        for ci in self.get_container_instances(cluster):
            if ci.status not in (InstanceStatus.ACTIVE.value, InstanceStatus.DRAINING.value):
                logger.debug(f"Skipping container instance {ci.ec2_instance_id} with status {ci.status}")
                continue
            try:
                free_cpu, free_memory = capacity_from_resources(ci.remaining_resources)
            except ValueError as e:
                raise PlatformError(f"Unexpected resources on {ci.ec2_instance_id}: {e}") from e
            resources.append(InstanceResources(
                instance_id=ci.ec2_instance_id,
                cluster_name=cluster,
                availability_zone=ci.availability_zone,
                free_cpu=free_cpu,
                free_memory=free_memory,
                status=InstanceStatus(ci.status),
            ))
        return resources

    def drain_node(self, cluster: str, container_instance_arn: str) -> None:
        try:
            self.ecs_client.update_container_instances_state(
                cluster=cluster,
                containerInstances=[container_instance_arn],
                status='DRAINING',
            )
        except ClientError as e:
            raise platform_error(f"Drain container instance {container_instance_arn}", e) from e
        logger.info(f"Set container instance {container_instance_arn} on {cluster} to DRAINING")

    def get_running_tasks_count(self, cluster: str, container_instance_arn: str) -> int:
        instances = self.describe_container_instances(cluster, [container_instance_arn])
        if not instances:
            raise NotFound(f"Container instance {container_instance_arn} not found on {cluster}")
        return instances[0].running_tasks_count

    def get_cluster_name_by_instance_id(self, instance_id: str) -> str:
        """Clusters tag their instances with Cluster=<name>"""
        try:
            response = self.ec2_client.describe_tags(
                Filters=[{'Name': 'resource-id', 'Values': [instance_id]}]
            )
        except ClientError as e:
            raise platform_error(f"Describe tags of {instance_id}", e) from e
        for tag in response.get('Tags', []):
            if tag.get('Key') == "Cluster":
                return tag['Value']
        raise NotFound(f"Could not determine cluster name of {instance_id}. Is the EC2 instance tagged?")

    def get_container_instance_arn_by_instance_id(self, cluster: str, instance_id: str) -> str:
        for ci in self.get_container_instances(cluster):
            if ci.ec2_instance_id == instance_id:
                return ci.container_instance_arn
        raise NotFound(f"Couldn't find container instance arn (instanceId={instance_id})")
