"""Drains container instances that an Auto Scaling group is terminating."""
import logging
import time
from typing import Callable, Dict, List

from .aws.autoscaling import AutoScalingPlatform
from .aws.ecs import ECSPlatform
from .config.settings import Settings, get_settings
from .errors import NotFound
from .events import LifecycleEvent
from .resource_cache import ResourceCache
from .schemas import InstanceStatus
from .store import ServiceStore
from .watchers import WatcherRegistry

logger = logging.getLogger(__name__)


class DrainCoordinator:
    """Holds a terminating instance's lifecycle hook until its tasks are gone"""

    def __init__(self, store: ServiceStore, ecs: ECSPlatform, autoscaling: AutoScalingPlatform,
                 cache: ResourceCache, registry: WatcherRegistry = None, settings: Settings = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.store = store
        self.ecs = ecs
        self.autoscaling = autoscaling
        self.cache = cache
        self.registry = registry or WatcherRegistry()
        self.settings = settings or get_settings()
        self.sleep = sleep

    def process_lifecycle_event(self, event: LifecycleEvent) -> str:
        """Set the instance DRAINING and start its watcher. Returns the cluster name."""
        cluster_name = self.ecs.get_cluster_name_by_instance_id(event.instance_id)
        container_instance_arn = self.ecs.get_container_instance_arn_by_instance_id(cluster_name, event.instance_id)
        self.ecs.drain_node(cluster_name, container_instance_arn)
        self.cache.mark_draining(cluster_name, event.instance_id)
        self.launch(
            cluster_name, container_instance_arn, event.instance_id,
            event.auto_scaling_group_name, event.lifecycle_hook_name, event.lifecycle_action_token,
        )
        return cluster_name

    def launch(self, cluster_name: str, container_instance_arn: str, instance_id: str,
               auto_scaling_group_name: str, lifecycle_hook_name: str, lifecycle_action_token: str = "") -> bool:
        return self.registry.launch(
            ("drain", instance_id), self.wait_for_drained_node,
            cluster_name, container_instance_arn, instance_id,
            auto_scaling_group_name, lifecycle_hook_name, lifecycle_action_token,
        )

    def wait_for_drained_node(self, cluster_name: str, container_instance_arn: str, instance_id: str,
                              auto_scaling_group_name: str, lifecycle_hook_name: str,
                              lifecycle_action_token: str = "") -> bool:
        """Poll the running task count, then release the hook with CONTINUE.

        The hook is released after drain_max_attempts polls even when tasks
        remain. Returns whether the instance drained.
        """
        drained = False
        for attempt in range(self.settings.drain_max_attempts):
            running = self.ecs.get_running_tasks_count(cluster_name, container_instance_arn)
            if running == 0:
                drained = True
                break
            logger.info(f"Instance {instance_id}: still {running} tasks running (attempt {attempt + 1})")
            self.sleep(self.settings.drain_poll_interval_seconds)
        if not drained:
            logger.error(f"Instance {instance_id}: not able to drain tasks before timeout")

        self.autoscaling.complete_lifecycle_action(
            auto_scaling_group_name, instance_id, lifecycle_hook_name,
            lifecycle_action_token=lifecycle_action_token or None,
        )
        logger.info(f"Instance {instance_id} drained, completed lifecycle action")
        return drained

    def resume(self) -> int:
        """Re-attach watchers to instances the platform reports as DRAINING.

        Clusters are those of the known services. A cluster without a group
        or without a terminating hook is skipped.
        """
        clusters: Dict[str, List[str]] = {}
        for service in self.store.get_services():
            clusters.setdefault(service.cluster_name, []).append(service.service_name)

        launched = 0
        for cluster_name in clusters:
            try:
                group_name = self.autoscaling.get_autoscaling_group_by_tag(cluster_name)
            except NotFound:
                logger.info(f"Cluster {cluster_name} not running - skipping resume for this cluster")
                continue
            hook_names = self.autoscaling.get_lifecycle_hook_names(group_name)
            if not hook_names:
                logger.error(f"Cluster {cluster_name} doesn't have a lifecycle hook")
                continue
            for instance in self.ecs.get_container_instances(cluster_name):
                if instance.status != InstanceStatus.DRAINING.value:
                    continue
                if self.registry.is_running(("drain", instance.ec2_instance_id)):
                    continue
                self.cache.mark_draining(cluster_name, instance.ec2_instance_id)
                logger.info(f"Launching drain watcher for cluster={cluster_name}, instance={instance.ec2_instance_id}, "
                            f"autoScalingGroupName={group_name}")
                if self.launch(cluster_name, instance.container_instance_arn, instance.ec2_instance_id,
                               group_name, hook_names[0]):
                    launched += 1
        return launched
