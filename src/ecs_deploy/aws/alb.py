"""Application load balancer of a cluster: target groups, attributes and routing rules."""
import logging
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from ..errors import NotFound, PlatformError
from ..schemas import DeploymentSpec, HealthCheck
from .utils import error_code, get_elbv2_client, platform_error

logger = logging.getLogger(__name__)


def health_check_request(health_check: HealthCheck) -> Dict[str, Any]:
    """Map a health check onto ModifyTargetGroup / CreateTargetGroup parameters, skipping unset values"""
    request = {}
    if health_check.healthy_threshold > 0:
        request['HealthyThresholdCount'] = health_check.healthy_threshold
    if health_check.unhealthy_threshold > 0:
        request['UnhealthyThresholdCount'] = health_check.unhealthy_threshold
    if health_check.path:
        request['HealthCheckPath'] = health_check.path
    if health_check.port:
        request['HealthCheckPort'] = health_check.port
    if health_check.protocol:
        request['HealthCheckProtocol'] = health_check.protocol
    if health_check.interval > 0:
        request['HealthCheckIntervalSeconds'] = health_check.interval
    if health_check.matcher:
        request['Matcher'] = {'HttpCode': health_check.matcher}
    if health_check.timeout > 0:
        request['HealthCheckTimeoutSeconds'] = health_check.timeout
    return request


def target_group_attributes(spec: DeploymentSpec) -> List[Dict[str, str]]:
    attributes = []
    if spec.deregistration_delay != -1:
        attributes.append({'Key': 'deregistration_delay.timeout_seconds', 'Value': str(spec.deregistration_delay)})
    if spec.stickiness.enabled:
        attributes.append({'Key': 'stickiness.enabled', 'Value': 'true'})
        attributes.append({'Key': 'stickiness.type', 'Value': 'lb_cookie'})
        if spec.stickiness.duration != -1:
            attributes.append({
                'Key': 'stickiness.lb_cookie.duration_seconds',
                'Value': str(spec.stickiness.duration),
            })
    else:
        attributes.append({'Key': 'stickiness.enabled', 'Value': 'false'})
    return attributes


def rule_conditions(rule_type: str, values: List[str]) -> List[Dict[str, Any]]:
    if rule_type == "pathPattern":
        return [{'Field': 'path-pattern', 'Values': [values[0]]}]
    if rule_type == "hostname":
        return [{'Field': 'host-header', 'Values': [values[0]]}]
    if rule_type == "combined":
        return [
            {'Field': 'path-pattern', 'Values': [values[0]]},
            {'Field': 'host-header', 'Values': [values[1]]},
        ]
    raise ValueError(f"Unknown rule type: {rule_type}")


class LoadBalancer:
    """The load balancer fronting a cluster. It carries the cluster's name."""

    def __init__(self, cluster_name: str, client=None):
        self.cluster_name = cluster_name
        self.client = client or get_elbv2_client()
        self._load_balancer: Optional[Dict[str, Any]] = None
        self._listeners: Optional[List[Dict[str, Any]]] = None

    @property
    def load_balancer(self) -> Dict[str, Any]:
        if self._load_balancer is None:
            try:
                response = self.client.describe_load_balancers(Names=[self.cluster_name])
            except ClientError as e:
                if error_code(e) == 'LoadBalancerNotFound':
                    raise NotFound(f"Load balancer {self.cluster_name} not found") from e
                raise platform_error(f"Describe load balancer {self.cluster_name}", e) from e
            load_balancers = response.get('LoadBalancers', [])
            if not load_balancers:
                raise NotFound(f"Load balancer {self.cluster_name} not found")
            self._load_balancer = load_balancers[0]
        return self._load_balancer

    @property
    def listeners(self) -> List[Dict[str, Any]]:
        if self._listeners is None:
            try:
                response = self.client.describe_listeners(
                    LoadBalancerArn=self.load_balancer['LoadBalancerArn']
                )
            except ClientError as e:
                raise platform_error(f"Describe listeners of {self.cluster_name}", e) from e
            self._listeners = response.get('Listeners', [])
        return self._listeners

    # ==========================================
    # Target groups
    # ==========================================

    def create_target_group(self, service_name: str, spec: DeploymentSpec) -> str:
        request = {
            'Name': service_name,
            'Protocol': spec.service_protocol.upper(),
            'Port': spec.service_port,
            'VpcId': self.load_balancer['VpcId'],
        }
        if spec.network_mode == "awsvpc":
            request['TargetType'] = 'ip'
        request.update(health_check_request(spec.health_check))
        try:
            response = self.client.create_target_group(**request)
        except ClientError as e:
            raise platform_error(f"Create target group {service_name}", e) from e
        arn = response['TargetGroups'][0]['TargetGroupArn']
        logger.info(f"Created target group {service_name}: {arn}")
        return arn

    def get_target_group_arn(self, service_name: str) -> str:
        try:
            response = self.client.describe_target_groups(Names=[service_name])
        except ClientError as e:
            if error_code(e) == 'TargetGroupNotFound':
                raise NotFound(f"Target group {service_name} not found") from e
            raise platform_error(f"Describe target group {service_name}", e) from e
        target_groups = response.get('TargetGroups', [])
        if len(target_groups) != 1:
            raise NotFound(f"Target group {service_name} not found")
        return target_groups[0]['TargetGroupArn']

    def update_health_check(self, target_group_arn: str, health_check: HealthCheck) -> None:
        request = health_check_request(health_check)
        if not request:
            return
        try:
            self.client.modify_target_group(TargetGroupArn=target_group_arn, **request)
        except ClientError as e:
            raise platform_error(f"Update health check of {target_group_arn}", e) from e
        logger.info(f"Updated health check of {target_group_arn}")

    def modify_target_group_attributes(self, target_group_arn: str, spec: DeploymentSpec) -> None:
        try:
            self.client.modify_target_group_attributes(
                TargetGroupArn=target_group_arn,
                Attributes=target_group_attributes(spec),
            )
        except ClientError as e:
            raise platform_error(f"Modify attributes of {target_group_arn}", e) from e
        logger.info(f"Updated attributes of {target_group_arn}")

    def delete_target_group(self, target_group_arn: str) -> None:
        try:
            self.client.delete_target_group(TargetGroupArn=target_group_arn)
        except ClientError as e:
            raise platform_error(f"Delete target group {target_group_arn}", e) from e
        logger.info(f"Deleted target group {target_group_arn}")

    # ==========================================
    # Rules
    # ==========================================

    def get_rules(self) -> List[Dict[str, Any]]:
        """All rules of all listeners, default rules included"""
        rules = []
        for listener in self.listeners:
            request = {'ListenerArn': listener['ListenerArn']}
            while True:
                try:
                    response = self.client.describe_rules(**request)
                except ClientError as e:
                    raise platform_error(f"Describe rules of {listener['ListenerArn']}", e) from e
                rules.extend(response.get('Rules', []))
                if not response.get('NextMarker'):
                    break
                request['Marker'] = response['NextMarker']
        return rules

    def get_highest_rule(self) -> int:
        """Highest numeric rule priority across all listeners, 0 when only defaults exist"""
        highest = 0
        for rule in self.get_rules():
            priority = rule.get('Priority', 'default')
            if priority.isdigit():
                highest = max(highest, int(priority))
        return highest

    def delete_rules_for_target(self, target_group_arn: str) -> int:
        """Delete the non-default rules forwarding to a target group"""
        deleted = 0
        for rule in self.get_rules():
            if rule.get('IsDefault'):
                continue
            if not any(a.get('TargetGroupArn') == target_group_arn for a in rule.get('Actions', [])):
                continue
            try:
                self.client.delete_rule(RuleArn=rule['RuleArn'])
            except ClientError as e:
                raise platform_error(f"Delete rule {rule['RuleArn']}", e) from e
            deleted += 1
        logger.info(f"Deleted {deleted} rules forwarding to {target_group_arn}")
        return deleted

    def create_rule(self, listener_arn: str, rule_type: str, target_group_arn: str, values: List[str],
                    priority: int) -> None:
        try:
            self.client.create_rule(
                ListenerArn=listener_arn,
                Conditions=rule_conditions(rule_type, values),
                Priority=priority,
                Actions=[{'Type': 'forward', 'TargetGroupArn': target_group_arn}],
            )
        except ClientError as e:
            raise platform_error(f"Create rule with priority {priority}", e) from e
        logger.info(f"Created {rule_type} rule {values} on {listener_arn} with priority {priority}")

    def create_rule_for_listeners(self, rule_type: str, protocols: List[str], target_group_arn: str,
                                  values: List[str], priority: int) -> List[str]:
        """One rule on each listener whose protocol is named, with consecutive priorities"""
        listener_arns = []
        wanted = {p.lower() for p in protocols}
        for listener in self.listeners:
            if listener.get('Protocol', '').lower() not in wanted:
                continue
            self.create_rule(listener['ListenerArn'], rule_type, target_group_arn, values,
                             priority + len(listener_arns))
            listener_arns.append(listener['ListenerArn'])
        if len(listener_arns) != len(wanted):
            raise PlatformError(f"Not all listeners found for {protocols} on {self.cluster_name}")
        return listener_arns

    def create_rule_for_all_listeners(self, rule_type: str, target_group_arn: str, values: List[str],
                                      priority: int) -> List[str]:
        listener_arns = []
        for listener in self.listeners:
            self.create_rule(listener['ListenerArn'], rule_type, target_group_arn, values, priority)
            listener_arns.append(listener['ListenerArn'])
        return listener_arns

    def create_rules_for_target(self, service_name: str, spec: DeploymentSpec, target_group_arn: str) -> List[str]:
        """Route traffic to a new service and return the listeners it is attached to.

        Rule conditions are numbered from the highest existing priority + 10.
        Without conditions the service gets /<service> and /<service>/* on
        every listener.
        """
        listener_arns = []
        priority = self.get_highest_rule()
        if spec.rule_conditions:
            new_rules = 0
            for condition in spec.rule_conditions:
                if condition.path_pattern and condition.hostname:
                    rule_type, values = "combined", [condition.path_pattern, condition.hostname]
                elif condition.path_pattern:
                    rule_type, values = "pathPattern", [condition.path_pattern]
                elif condition.hostname:
                    rule_type, values = "hostname", [condition.hostname]
                else:
                    continue
                listener_arns += self.create_rule_for_listeners(
                    rule_type, condition.listeners, target_group_arn, values, priority + 10 + new_rules
                )
                new_rules += len(condition.listeners)
        else:
            listener_arns += self.create_rule_for_all_listeners(
                "pathPattern", target_group_arn, [f"/{service_name}"], priority + 10
            )
            self.create_rule_for_all_listeners(
                "pathPattern", target_group_arn, [f"/{service_name}/*"], priority + 11
            )
        return listener_arns
