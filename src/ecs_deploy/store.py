"""Repository for deployment records, service records and cluster snapshots."""

import logging
from datetime import datetime
from typing import List, Optional

from database.nosql_adapter import NoSQLAdapter

from .errors import NotFound
from .schemas import (
    ClusterResourceSnapshot,
    DeploymentRecord,
    DeploymentSpec,
    DeploymentStatus,
    ServiceRecord,
    check_deployment_transition,
    format_deploy_time,
    make_deployment_id,
    utcnow,
)

logger = logging.getLogger(__name__)

DEPLOYMENTS = 'deployments'
SERVICES = 'services'
CLUSTERS = 'clusters'


class ServiceStore:
    """Read/write contract between the controller and the document store"""

    def __init__(self, adapter: NoSQLAdapter):
        self.adapter = adapter

    # ==========================================
    # Deployment records
    # ==========================================

    def new_deployment(self, service_name: str, task_definition_arn: str, spec: DeploymentSpec,
                       now: datetime = None) -> DeploymentRecord:
        """Write a new running deployment record"""
        now = now or utcnow()
        record = DeploymentRecord(
            service_name=service_name,
            cluster_name=spec.cluster,
            time=format_deploy_time(now),
            task_definition_arn=task_definition_arn,
            deploy_data=spec,
            status=DeploymentStatus.RUNNING,
            status_updated_at=now.isoformat(),
        )
        self.adapter.create_document(DEPLOYMENTS, record.to_document())
        logger.info(f"Created deployment record {record.deployment_id}")
        return record

    def get_deployment(self, service_name: str, time: str) -> DeploymentRecord:
        document = self.adapter.get_document(DEPLOYMENTS, make_deployment_id(service_name, time))
        if document is None:
            raise NotFound(f"Deployment not found: {service_name} at {time}")
        return DeploymentRecord.from_document(document)

    def reload(self, record: DeploymentRecord) -> DeploymentRecord:
        return self.get_deployment(record.service_name, record.time)

    def get_deploys_for_service(self, service_name: str, limit: int = 20) -> List[DeploymentRecord]:
        """Latest deployments of one service, newest first"""
        documents = self.adapter.query_documents(
            DEPLOYMENTS, {'service_name': service_name}, order_by='time', descending=True, limit=limit
        )
        return [DeploymentRecord.from_document(d) for d in documents]

    def get_last_deploy(self, service_name: str) -> Optional[DeploymentRecord]:
        deploys = self.get_deploys_for_service(service_name, limit=1)
        return deploys[0] if deploys else None

    def get_second_to_last_deploy(self, service_name: str) -> Optional[DeploymentRecord]:
        deploys = self.get_deploys_for_service(service_name, limit=2)
        return deploys[1] if len(deploys) > 1 else None

    def get_deploys(self, since: datetime, until: datetime = None, limit: int = 20) -> List[DeploymentRecord]:
        """Deployments of all services created in [since, until), newest first"""
        documents = self.adapter.query_time_range(
            DEPLOYMENTS,
            start=format_deploy_time(since),
            end=format_deploy_time(until) if until else None,
            limit=limit,
        )
        return [DeploymentRecord.from_document(d) for d in documents]

    def get_running_deploys(self, service_name: str = None) -> List[DeploymentRecord]:
        query = {'status': DeploymentStatus.RUNNING.value}
        if service_name:
            query['service_name'] = service_name
        documents = self.adapter.query_documents(DEPLOYMENTS, query, order_by='time', limit=1000)
        return [DeploymentRecord.from_document(d) for d in documents]

    def set_deployment_status(self, record: DeploymentRecord, status: DeploymentStatus,
                              reason: str = None) -> bool:
        """Move a running record to a terminal status.

        The write only lands while the stored record is still running, so a
        late verdict never overwrites a record that was aborted or already
        decided. Returns whether the record was changed.
        """
        check_deployment_transition(DeploymentStatus.RUNNING, status)
        updated = record.model_copy(update={
            'status': status,
            'deploy_error': reason,
            'status_updated_at': utcnow().isoformat(),
        })
        changed = self.adapter.update_document_if(
            DEPLOYMENTS, record.deployment_id, updated.to_document(),
            field='status', expected=DeploymentStatus.RUNNING.value
        )
        if changed:
            logger.info(f"Deployment {record.deployment_id} is now {status.value}" + (f": {reason}" if reason else ""))
        else:
            logger.info(f"Deployment {record.deployment_id} is no longer running, {status.value} not recorded")
        return changed

    # ==========================================
    # Service records
    # ==========================================

    def create_service(self, service: ServiceRecord) -> None:
        self.adapter.put_document(SERVICES, service.model_dump(mode="json"))
        logger.info(f"Stored service {service.service_name} on cluster {service.cluster_name}")

    def get_service(self, service_name: str) -> Optional[ServiceRecord]:
        document = self.adapter.get_document(SERVICES, service_name)
        return ServiceRecord.model_validate(document) if document else None

    def get_services(self, cluster_name: str = None) -> List[ServiceRecord]:
        query = {'cluster_name': cluster_name} if cluster_name else None
        documents = self.adapter.query_documents(SERVICES, query, order_by='service_name', limit=10000)
        return [ServiceRecord.model_validate(d) for d in documents]

    def get_cluster_name(self, service_name: str) -> str:
        service = self.get_service(service_name)
        if service is None:
            raise NotFound(f"Service {service_name} not found")
        return service.cluster_name

    def update_service_limits(self, service_name: str, cpu_reservation: int, cpu_limit: int,
                              memory_reservation: int, memory_limit: int) -> ServiceRecord:
        service = self.get_service(service_name)
        if service is None:
            raise NotFound(f"Service {service_name} not found")
        service = service.model_copy(update={
            'cpu_reservation': cpu_reservation,
            'cpu_limit': cpu_limit,
            'memory_reservation': memory_reservation,
            'memory_limit': memory_limit,
        })
        self.adapter.update_document(SERVICES, service_name, service.model_dump(mode="json"))
        logger.info(f"Updated resource limits of {service_name}: cpu {cpu_reservation}/{cpu_limit}, "
                    f"memory {memory_reservation}/{memory_limit}")
        return service

    def delete_service(self, service_name: str) -> bool:
        """Forget a service. Its deployment history is kept."""
        return self.adapter.delete_document(SERVICES, service_name)

    def set_scaling_property(self, service_name: str, desired_count: int) -> None:
        service = self.get_service(service_name)
        if service is None:
            raise NotFound(f"Service {service_name} not found")
        service = service.model_copy(update={'desired_count': desired_count})
        self.adapter.update_document(SERVICES, service_name, service.model_dump(mode="json"))

    # ==========================================
    # Cluster snapshots
    # ==========================================

    def get_cluster_snapshot(self, cluster_name: str) -> Optional[ClusterResourceSnapshot]:
        document = self.adapter.get_document(CLUSTERS, cluster_name)
        return ClusterResourceSnapshot.model_validate(document) if document else None

    def get_cluster_snapshots(self) -> List[ClusterResourceSnapshot]:
        documents = self.adapter.query_documents(CLUSTERS, limit=10000)
        return [ClusterResourceSnapshot.model_validate(d) for d in documents]

    def put_cluster_snapshot(self, snapshot: ClusterResourceSnapshot) -> None:
        self.adapter.put_document(CLUSTERS, snapshot.to_document())
