"""IAM roles and policies for deployed services."""
import json
import logging
from typing import Optional

from botocore.exceptions import ClientError

from ..config.settings import Settings, get_settings
from .utils import error_code, get_iam_client, get_sts_client, platform_error

logger = logging.getLogger(__name__)

ECS_SERVICE_POLICY_ARN = "arn:aws:iam::aws:policy/service-role/AmazonEC2ContainerServiceRole"


def assume_role_policy(service_principal: str) -> str:
    return json.dumps({
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Service": [service_principal]},
                "Action": ["sts:AssumeRole"],
            }
        ],
    })


ECS_TASKS_TRUST = assume_role_policy("ecs-tasks.amazonaws.com")
ECS_SERVICE_TRUST = assume_role_policy("ecs.amazonaws.com")


def paramstore_policy(region: str, account_id: str, path_prefix: str, service_name: str) -> str:
    """Read access to the parameters under /<prefix>-<env>/<service>/"""
    return json.dumps({
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": ["ssm:GetParametersByPath"],
                "Resource": [f"arn:aws:ssm:{region}:{account_id}:parameter{path_prefix}{service_name}/*"],
            }
        ],
    })


class IAMProvisioner:
    """Creates the roles a service needs before its task definition is registered"""

    def __init__(self, iam_client=None, sts_client=None, settings: Settings = None):
        self.settings = settings or get_settings()
        self.iam_client = iam_client or get_iam_client()
        self._sts_client = sts_client
        self._account_id: Optional[str] = self.settings.aws_account_id

    def get_account_id(self) -> str:
        if self._account_id:
            return self._account_id
        sts_client = self._sts_client or get_sts_client()
        try:
            self._account_id = sts_client.get_caller_identity()['Account']
        except ClientError as e:
            raise platform_error("Get caller identity", e) from e
        return self._account_id

    def get_role_arn(self, role_name: str) -> Optional[str]:
        """Arn of a role, or None when it does not exist"""
        try:
            response = self.iam_client.get_role(RoleName=role_name)
        except ClientError as e:
            if error_code(e) == 'NoSuchEntity':
                return None
            raise platform_error(f"Get role {role_name}", e) from e
        return response['Role']['Arn']

    def role_exists(self, role_name: str) -> bool:
        return self.get_role_arn(role_name) is not None

    def create_role(self, role_name: str, assume_role_policy_document: str) -> str:
        try:
            response = self.iam_client.create_role(
                RoleName=role_name,
                AssumeRolePolicyDocument=assume_role_policy_document,
            )
        except ClientError as e:
            raise platform_error(f"Create role {role_name}", e) from e
        logger.info(f"Created role {role_name}")
        return response['Role']['Arn']

    def put_role_policy(self, role_name: str, policy_name: str, policy_document: str) -> None:
        try:
            self.iam_client.put_role_policy(
                RoleName=role_name,
                PolicyName=policy_name,
                PolicyDocument=policy_document,
            )
        except ClientError as e:
            raise platform_error(f"Put policy {policy_name} on {role_name}", e) from e

    def attach_role_policy(self, role_name: str, policy_arn: str) -> None:
        try:
            self.iam_client.attach_role_policy(RoleName=role_name, PolicyArn=policy_arn)
        except ClientError as e:
            raise platform_error(f"Attach policy {policy_arn} to {role_name}", e) from e

    def ensure_task_role(self, service_name: str) -> str:
        """Create ecs-<service> if missing and return its arn"""
        role_name = f"ecs-{service_name}"
        role_arn = self.get_role_arn(role_name)
        if role_arn is None:
            role_arn = self.create_role(role_name, ECS_TASKS_TRUST)
        if self.settings.paramstore_enabled:
            self.put_role_policy(
                role_name,
                f"paramstore-{service_name}",
                paramstore_policy(
                    self.settings.aws_region,
                    self.get_account_id(),
                    self.settings.paramstore_path_prefix,
                    service_name,
                ),
            )
        return role_arn

    def ensure_service_role(self) -> str:
        """Create the role ECS uses to register load balanced services"""
        role_name = self.settings.ecs_service_role
        role_arn = self.get_role_arn(role_name)
        if role_arn is not None:
            return role_arn
        role_arn = self.create_role(role_name, ECS_SERVICE_TRUST)
        self.attach_role_policy(role_name, ECS_SERVICE_POLICY_ARN)
        return role_arn
