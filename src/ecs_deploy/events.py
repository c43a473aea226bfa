"""
Inbound platform events.

Capacity changes come from ECS container instance state change events,
terminations from Auto Scaling lifecycle hooks. Both arrive either raw
(EventBridge), wrapped in an SNS notification, or as the body of an SQS
message carrying that notification.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from .aws.ecs import availability_zone_from_attributes, capacity_from_resources, cluster_name_from_arn
from .errors import InvalidEvent
from .schemas import InstanceResources, InstanceStatus

logger = logging.getLogger(__name__)

ECS_STATE_CHANGE = "ECS Container Instance State Change"
LIFECYCLE_ACTION = "EC2 Instance-terminate Lifecycle Action"


class CapacityChangeEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    cluster_arn: str = Field(..., alias="clusterArn")
    instance_id: str = Field(..., validation_alias=AliasChoices("ec2InstanceId", "instanceId", "instance_id"))
    status: Optional[str] = Field(None)
    remaining_resources: List[Dict[str, Any]] = Field(default_factory=list, alias="remainingResources")
    registered_resources: List[Dict[str, Any]] = Field(default_factory=list, alias="registeredResources")
    attributes: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def cluster_name(self) -> str:
        try:
            return cluster_name_from_arn(self.cluster_arn)
        except ValueError as e:
            raise InvalidEvent(str(e)) from e

    @property
    def availability_zone(self) -> str:
        return availability_zone_from_attributes(self.attributes)

    def free_capacity(self) -> Tuple[int, int]:
        """(cpu, memory) still free on the instance"""
        try:
            return capacity_from_resources(self.remaining_resources)
        except ValueError as e:
            raise InvalidEvent(str(e)) from e

    def registered_capacity(self) -> Tuple[int, int]:
        """(cpu, memory) the instance registered with"""
        try:
            return capacity_from_resources(self.registered_resources)
        except ValueError as e:
            raise InvalidEvent(str(e)) from e

    def to_instance_resources(self) -> InstanceResources:
        free_cpu, free_memory = self.free_capacity()
        status = InstanceStatus.DRAINING if self.status == InstanceStatus.DRAINING.value else InstanceStatus.ACTIVE
        return InstanceResources(
            instance_id=self.instance_id,
            cluster_name=self.cluster_name,
            availability_zone=self.availability_zone,
            free_cpu=free_cpu,
            free_memory=free_memory,
            status=status,
        )


class LifecycleEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    instance_id: str = Field(..., validation_alias=AliasChoices("EC2InstanceId", "instanceId", "instance_id"))
    auto_scaling_group_name: str = Field(
        ..., validation_alias=AliasChoices("AutoScalingGroupName", "autoScalingGroupName", "auto_scaling_group_name")
    )
    lifecycle_hook_name: str = Field(
        ..., validation_alias=AliasChoices("LifecycleHookName", "lifecycleHookName", "lifecycle_hook_name")
    )
    lifecycle_action_token: str = Field(
        "", validation_alias=AliasChoices("LifecycleActionToken", "lifecycleActionToken", "lifecycle_action_token")
    )
    lifecycle_transition: str = Field(
        "", validation_alias=AliasChoices("LifecycleTransition", "lifecycleTransition", "lifecycle_transition")
    )


PlatformEvent = Union[CapacityChangeEvent, LifecycleEvent]


def _load(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise InvalidEvent(f"Event is not valid JSON: {e}") from e
    return value


def unwrap(payload: Any) -> Dict[str, Any]:
    """Strip SQS, SNS and Lambda record envelopes down to the event itself"""
    payload = _load(payload)
    if not isinstance(payload, dict):
        raise InvalidEvent("Event must be a JSON object")
    if 'Records' in payload:
        records = payload['Records']
        if len(records) != 1:
            raise InvalidEvent(f"Expected exactly one record, got {len(records)}")
        record = records[0]
        if 'Sns' in record:
            return unwrap(record['Sns'].get('Message'))
        if 'body' in record:
            return unwrap(record['body'])
        raise InvalidEvent("Unsupported record type")
    if payload.get('Type') == 'Notification' and 'Message' in payload:
        return unwrap(payload['Message'])
    return payload


def parse_event(payload: Any) -> PlatformEvent:
    """Parse a raw or wrapped event into a typed platform event.

    Raises InvalidEvent for anything that is neither a container instance
    state change nor a termination lifecycle action.
    """
    event = unwrap(payload)
    detail_type = event.get('detail-type', '')
    detail = event.get('detail', event)
    try:
        if detail_type == ECS_STATE_CHANGE or 'clusterArn' in detail:
            return CapacityChangeEvent.model_validate(detail)
        if detail_type == LIFECYCLE_ACTION or 'LifecycleHookName' in detail or 'lifecycleHookName' in detail:
            return LifecycleEvent.model_validate(detail)
    except ValidationError as e:
        raise InvalidEvent(f"Malformed {detail_type or 'platform'} event: {e}") from e
    logger.info(f"Ignoring event of type {detail_type or 'unknown'}")
    raise InvalidEvent(f"Unsupported event type: {detail_type or 'unknown'}")
