"""
Short-lived per-cluster cache of container instance capacity.

A snapshot is trusted for cache_ttl_seconds after its last full rebuild.
Between rebuilds it is patched one instance at a time from capacity-change
events. All writers of one cluster go through the cluster's lock.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from .aws.ecs import ECSPlatform
from .config.settings import Settings, get_settings
from .schemas import (
    ClusterResourceSnapshot,
    InstanceResources,
    InstanceStatus,
    ScalingAction,
    check_instance_transition,
    utcnow,
)
from .store import ServiceStore

logger = logging.getLogger(__name__)


class ResourceCache:

    def __init__(self, store: ServiceStore, ecs: ECSPlatform, settings: Settings = None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.ecs = ecs
        self.settings = settings or get_settings()
        self.clock = clock
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def lock(self, cluster_name: str):
        """Serialize writers of one cluster's snapshot"""
        with self._locks_guard:
            cluster_lock = self._locks.setdefault(cluster_name, threading.RLock())
        with cluster_lock:
            yield

    def is_stale(self, snapshot: Optional[ClusterResourceSnapshot]) -> bool:
        if snapshot is None or snapshot.snapshot_at is None:
            return True
        age = self.clock() - snapshot.snapshot_at
        return age > timedelta(seconds=self.settings.cache_ttl_seconds)

    def get(self, cluster_name: str) -> Tuple[Optional[ClusterResourceSnapshot], bool]:
        """Return the stored snapshot and whether it is too old to trust"""
        snapshot = self.store.get_cluster_snapshot(cluster_name)
        return snapshot, self.is_stale(snapshot)

    def rebuild(self, cluster_name: str) -> ClusterResourceSnapshot:
        """Replace the instance list with the platform's current view.

        Scaling history survives the rebuild. PlatformError propagates and
        leaves the stored snapshot untouched.
        """
        with self.lock(cluster_name):
            instances = self.ecs.get_free_resources(cluster_name)
            previous = self.store.get_cluster_snapshot(cluster_name)
            now = self.clock()
            snapshot = ClusterResourceSnapshot(
                cluster_name=cluster_name,
                instances=instances,
                snapshot_at=now,
                last_scaling_action=previous.last_scaling_action if previous else ScalingAction.NONE,
                last_scaling_at=previous.last_scaling_at if previous else None,
                last_decision=previous.last_decision if previous else ScalingAction.NONE,
                updated_at=now,
            )
            self.store.put_cluster_snapshot(snapshot)
            logger.info(f"Rebuilt resource cache of {cluster_name} with {len(instances)} instances")
            return snapshot

    def upsert(self, cluster_name: str, entry: InstanceResources) -> ClusterResourceSnapshot:
        """Replace or add one instance entry.

        An existing DRAINING entry stays DRAINING, since capacity events do
        not carry the scheduling state.
        """
        with self.lock(cluster_name):
            snapshot = self.store.get_cluster_snapshot(cluster_name)
            if snapshot is None:
                snapshot = ClusterResourceSnapshot(cluster_name=cluster_name)
            existing = snapshot.find_instance(entry.instance_id)
            if existing is not None and existing.status == InstanceStatus.DRAINING:
                entry = entry.model_copy(update={'status': InstanceStatus.DRAINING})
            instances = [i for i in snapshot.instances if i.instance_id != entry.instance_id]
            instances.append(entry)
            snapshot = snapshot.model_copy(update={'instances': instances, 'updated_at': self.clock()})
            self.store.put_cluster_snapshot(snapshot)
            logger.debug(f"Upserted {entry.instance_id} into resource cache of {cluster_name}")
            return snapshot

    def mark_draining(self, cluster_name: str, instance_id: str) -> Optional[ClusterResourceSnapshot]:
        """Flip a cached instance to DRAINING.

        An instance the snapshot does not know is left out; the next rebuild
        picks it up with its zone and capacity.
        """
        with self.lock(cluster_name):
            snapshot = self.store.get_cluster_snapshot(cluster_name)
            existing = snapshot.find_instance(instance_id) if snapshot is not None else None
            if existing is None:
                logger.info(f"{instance_id} not in resource cache of {cluster_name}, not marking it DRAINING")
                return snapshot
            if existing.status == InstanceStatus.DRAINING:
                return snapshot
            check_instance_transition(existing.status, InstanceStatus.DRAINING)
            entry = existing.model_copy(update={'status': InstanceStatus.DRAINING})
            instances = [i for i in snapshot.instances if i.instance_id != instance_id]
            instances.append(entry)
            snapshot = snapshot.model_copy(update={'instances': instances, 'updated_at': self.clock()})
            self.store.put_cluster_snapshot(snapshot)
            logger.info(f"Marked {instance_id} as DRAINING in resource cache of {cluster_name}")
            return snapshot

    def record_decision(self, cluster_name: str, action: ScalingAction, mutated: bool) -> ClusterResourceSnapshot:
        """Store the outcome of a decision cycle; the cooldown clock only moves on a mutation"""
        with self.lock(cluster_name):
            snapshot = self.store.get_cluster_snapshot(cluster_name)
            if snapshot is None:
                snapshot = ClusterResourceSnapshot(cluster_name=cluster_name)
            now = self.clock()
            update = {'last_decision': action, 'updated_at': now}
            if mutated:
                update['last_scaling_action'] = action
                update['last_scaling_at'] = now
            snapshot = snapshot.model_copy(update=update)
            self.store.put_cluster_snapshot(snapshot)
            return snapshot

    def in_cooldown(self, snapshot: Optional[ClusterResourceSnapshot]) -> bool:
        if snapshot is None or snapshot.last_scaling_at is None:
            return False
        elapsed = self.clock() - snapshot.last_scaling_at
        return elapsed < timedelta(seconds=self.settings.scaling_cooldown_seconds)
