"""Auto Scaling group calls: fleet size and termination lifecycle hooks."""
import logging
from dataclasses import dataclass
from typing import List, Optional

from botocore.exceptions import ClientError

from ..errors import CapacityBound, NotFound
from ..utils.decorators import platform_retry
from .utils import get_asg_client, platform_error

logger = logging.getLogger(__name__)

TERMINATING_TRANSITION = "autoscaling:EC2_INSTANCE_TERMINATING"
CLUSTER_TAG = "Cluster"


@dataclass
class ClusterNodeCount:
    """Desired, minimum and maximum size of the group backing a cluster"""
    auto_scaling_group_name: str
    desired: int
    min_size: int
    max_size: int


class AutoScalingPlatform:
    """Wrapper around the Auto Scaling API"""

    def __init__(self, client=None):
        self.client = client or get_asg_client()

    @platform_retry
    def get_autoscaling_group_by_tag(self, cluster_name: str) -> str:
        """Name of the group tagged Cluster=<cluster_name>"""
        try:
            paginator = self.client.get_paginator('describe_auto_scaling_groups')
            for page in paginator.paginate():
                for group in page.get('AutoScalingGroups', []):
                    for tag in group.get('Tags', []):
                        if tag.get('Key') == CLUSTER_TAG and tag.get('Value') == cluster_name:
                            return group['AutoScalingGroupName']
        except ClientError as e:
            raise platform_error(f"Describe auto scaling groups for {cluster_name}", e) from e
        raise NotFound("ClusterNotFound: Could not find cluster")

    @platform_retry
    def get_cluster_node_desired_count(self, auto_scaling_group_name: str) -> ClusterNodeCount:
        try:
            response = self.client.describe_auto_scaling_groups(
                AutoScalingGroupNames=[auto_scaling_group_name]
            )
        except ClientError as e:
            raise platform_error(f"Describe auto scaling group {auto_scaling_group_name}", e) from e
        groups = response.get('AutoScalingGroups', [])
        if not groups:
            raise NotFound(f"Auto scaling group {auto_scaling_group_name} not found")
        group = groups[0]
        return ClusterNodeCount(
            auto_scaling_group_name=auto_scaling_group_name,
            desired=group['DesiredCapacity'],
            min_size=group['MinSize'],
            max_size=group['MaxSize'],
        )

    def scale_cluster_nodes(self, auto_scaling_group_name: str, change: int) -> int:
        """Change the desired capacity by a delta and return the new value.

        Raises CapacityBound when the change would leave [MinSize, MaxSize].
        """
        count = self.get_cluster_node_desired_count(auto_scaling_group_name)
        new_desired = count.desired + change
        if new_desired > count.max_size:
            raise CapacityBound("Cluster is at maximum capacity")
        if new_desired < count.min_size:
            raise CapacityBound("Cluster is at minimum capacity")
        try:
            self.client.update_auto_scaling_group(
                AutoScalingGroupName=auto_scaling_group_name,
                DesiredCapacity=new_desired,
            )
        except ClientError as e:
            raise platform_error(f"Update auto scaling group {auto_scaling_group_name}", e) from e
        logger.info(f"Changed desired capacity of {auto_scaling_group_name} "
                    f"from {count.desired} to {new_desired}")
        return new_desired

    @platform_retry
    def get_lifecycle_hook_names(self, auto_scaling_group_name: str,
                                 transition: str = TERMINATING_TRANSITION) -> List[str]:
        try:
            response = self.client.describe_lifecycle_hooks(AutoScalingGroupName=auto_scaling_group_name)
        except ClientError as e:
            raise platform_error(f"Describe lifecycle hooks of {auto_scaling_group_name}", e) from e
        return [
            hook['LifecycleHookName']
            for hook in response.get('LifecycleHooks', [])
            if hook.get('LifecycleTransition') == transition
        ]

    def complete_lifecycle_action(self, auto_scaling_group_name: str, instance_id: str,
                                  lifecycle_hook_name: str, lifecycle_action_token: Optional[str] = None,
                                  result: str = "CONTINUE") -> None:
        """Release a lifecycle hook.

        Without a token the pending action of the instance is completed, which
        is how watchers re-attached after a restart release the hook.
        """
        request = {
            'AutoScalingGroupName': auto_scaling_group_name,
            'LifecycleHookName': lifecycle_hook_name,
            'LifecycleActionResult': result,
            'InstanceId': instance_id,
        }
        if lifecycle_action_token:
            request['LifecycleActionToken'] = lifecycle_action_token
        try:
            self.client.complete_lifecycle_action(**request)
        except ClientError as e:
            raise platform_error(f"Complete lifecycle action for {instance_id}", e) from e
        logger.info(f"Completed lifecycle action {lifecycle_hook_name} for {instance_id} with {result}")
