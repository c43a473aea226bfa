"""
Fleet scaling decisions driven by container instance capacity changes.

Scale up when some availability zone has no schedulable instance that can
take the largest service reservation on the cluster. Scale down when every
zone could absorb a full instance worth of registered capacity plus that
reservation and a buffer. At most one fleet mutation per cooldown window.
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, Tuple

from .aws.autoscaling import AutoScalingPlatform
from .config.settings import Settings, get_settings
from .errors import CapacityBound, NotFound
from .events import CapacityChangeEvent
from .resource_cache import ResourceCache
from .schemas import InstanceResources, InstanceStatus, ScalingAction
from .store import ServiceStore

logger = logging.getLogger(__name__)


@dataclass
class ScalingDecision:
    cluster_name: str
    action: ScalingAction
    desired_before: int
    desired_after: int
    reason: str = ""


def zones_with_room(instances: Iterable[InstanceResources], cpu: int, memory: int) -> Dict[str, bool]:
    """Per zone, whether a non-draining instance has strictly more than cpu and memory free"""
    fits: Dict[str, bool] = {}
    for instance in instances:
        room = (instance.status != InstanceStatus.DRAINING
                and instance.free_cpu > cpu and instance.free_memory > memory)
        fits[instance.availability_zone] = fits.get(instance.availability_zone, False) or room
    return fits


def free_per_zone(instances: Iterable[InstanceResources]) -> Dict[str, Tuple[int, int]]:
    """Summed (cpu, memory) free per zone over all cached instances"""
    totals: Dict[str, Tuple[int, int]] = {}
    for instance in instances:
        cpu, memory = totals.get(instance.availability_zone, (0, 0))
        totals[instance.availability_zone] = (cpu + instance.free_cpu, memory + instance.free_memory)
    return totals


class ScalingEngine:

    def __init__(self, store: ServiceStore, cache: ResourceCache, autoscaling: AutoScalingPlatform,
                 settings: Settings = None):
        self.store = store
        self.cache = cache
        self.autoscaling = autoscaling
        self.settings = settings or get_settings()

    def worst_case_unit(self, cluster_name: str) -> Tuple[int, int]:
        """Largest single-service (cpu, memory) reservation on the cluster"""
        services = self.store.get_services(cluster_name)
        if not services:
            raise NotFound(f"No services found on cluster {cluster_name}")
        return (max(s.cpu_reservation for s in services),
                max(s.memory_reservation for s in services))

    def scale_down_requirement(self, registered_cpu: int, registered_memory: int,
                               worst_cpu: int, worst_memory: int) -> Tuple[int, int]:
        cpu = registered_cpu + worst_cpu + math.ceil(worst_cpu * self.settings.scale_down_cpu_buffer_ratio)
        memory = (registered_memory + worst_memory
                  + math.ceil(worst_memory * self.settings.scale_down_memory_buffer_ratio))
        return cpu, memory

    def process_capacity_event(self, event: CapacityChangeEvent) -> ScalingDecision:
        cluster_name = event.cluster_name
        entry = event.to_instance_resources()
        registered_cpu, registered_memory = event.registered_capacity()
        worst_cpu, worst_memory = self.worst_case_unit(cluster_name)

        with self.cache.lock(cluster_name):
            snapshot, stale = self.cache.get(cluster_name)
            if stale:
                logger.info(f"No fresh resource cache for {cluster_name}, rebuilding")
                self.cache.rebuild(cluster_name)
            snapshot = self.cache.upsert(cluster_name, entry)

            group_name = self.autoscaling.get_autoscaling_group_by_tag(cluster_name)
            count = self.autoscaling.get_cluster_node_desired_count(group_name)
            cooling_down = self.cache.in_cooldown(snapshot)

            action = ScalingAction.NONE
            reason = "no scaling needed"
            fits_everywhere = True
            if count.desired < count.max_size:
                fits = zones_with_room(snapshot.instances, worst_cpu, worst_memory)
                for zone, fit in fits.items():
                    if not fit:
                        fits_everywhere = False
                        logger.info(f"No instance found in {zone} with {worst_cpu} cpu and {worst_memory} memory free")
                if not fits_everywhere:
                    if cooling_down:
                        reason = "scale up needed, cooldown active"
                    else:
                        action, reason = ScalingAction.UP, "a zone has no room for the largest service"

            if action == ScalingAction.NONE and fits_everywhere and count.desired > count.min_size:
                needed_cpu, needed_memory = self.scale_down_requirement(
                    registered_cpu, registered_memory, worst_cpu, worst_memory
                )
                totals = free_per_zone(snapshot.instances)
                absorbs = bool(totals) and all(
                    cpu >= needed_cpu and memory >= needed_memory for cpu, memory in totals.values()
                )
                for zone, (cpu, memory) in totals.items():
                    logger.debug(f"{zone}: have {cpu} cpu and {memory} memory available, "
                                 f"need {needed_cpu} cpu and {needed_memory} memory")
                if absorbs:
                    if cooling_down:
                        reason = "scale down possible, cooldown active"
                    else:
                        action, reason = ScalingAction.DOWN, "every zone can absorb an instance"

            desired_after = count.desired
            mutated = False
            if action != ScalingAction.NONE:
                change = 1 if action == ScalingAction.UP else -1
                try:
                    logger.info(f"Scaling {cluster_name} {action.value}: {reason}")
                    desired_after = self.autoscaling.scale_cluster_nodes(group_name, change)
                    mutated = True
                except CapacityBound as e:
                    logger.info(f"Not scaling {cluster_name}: {str(e)}")
                    action, reason = ScalingAction.NONE, str(e)

            self.cache.record_decision(cluster_name, action, mutated)

        return ScalingDecision(
            cluster_name=cluster_name,
            action=action,
            desired_before=count.desired,
            desired_after=desired_after,
            reason=reason,
        )
