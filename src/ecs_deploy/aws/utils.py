"""AWS client management and error translation."""
import os
import boto3
import logging
from typing import Any
from botocore.exceptions import ClientError

from ..config.settings import get_settings
from ..errors import PlatformError

logger = logging.getLogger(__name__)


class AWSClientManager:
    """Singleton manager for AWS service clients."""
    _instance = None
    _clients = {}

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(AWSClientManager, cls).__new__(cls)
            cls._instance._initialize()
        return cls._instance

    def _initialize(self):
        """Initialize the client manager with settings."""
        self.settings = get_settings()

        self.region = self.settings.aws_region
        self.endpoint_url = self.settings.aws_endpoint_url
        self.mode = self.settings.deployment_mode

        logger.info(f"Initializing AWSClientManager")
        logger.info(f"  Mode: {self.mode}")
        logger.info(f"  Region: {self.region}")
        logger.info(f"  Endpoint: {self.endpoint_url}")

    def get_client(self, service_name: str) -> Any:
        """Get or create an AWS service client."""
        if service_name in self._clients:
            return self._clients[service_name]

        client_kwargs = {
            'region_name': self.region
        }

        # Named profile (SSO) only applies to production
        aws_profile = os.environ.get('AWS_PROFILE')
        if aws_profile and self.mode == 'aws-prod':
            session = boto3.Session(profile_name=aws_profile)
            client = session.client(service_name, region_name=self.region)
            self._clients[service_name] = client
            logger.debug(f"Created {service_name} client using profile: {aws_profile}")
            return client

        if self.settings.aws_access_key_id:
            client_kwargs['aws_access_key_id'] = self.settings.aws_access_key_id
        if self.settings.aws_secret_access_key:
            client_kwargs['aws_secret_access_key'] = self.settings.aws_secret_access_key

        # Endpoint override for local/mock modes
        if self.settings.uses_local_endpoint:
            client_kwargs['endpoint_url'] = self.endpoint_url

        try:
            client = boto3.client(service_name, **client_kwargs)
            self._clients[service_name] = client
            logger.debug(f"Created {service_name} client")
            return client
        except Exception as e:
            logger.error(f"Error creating {service_name} client: {str(e)}")
            raise

    def clear_clients(self):
        """Clear all cached clients."""
        self._clients.clear()
        logger.debug("Cleared all AWS clients")


def get_ecs_client():
    """Get the ECS client."""
    return AWSClientManager().get_client('ecs')


def get_asg_client():
    """Get the Auto Scaling Group client."""
    return AWSClientManager().get_client('autoscaling')


def get_ec2_client():
    """Get the EC2 client."""
    return AWSClientManager().get_client('ec2')


def get_iam_client():
    """Get the IAM client."""
    return AWSClientManager().get_client('iam')


def get_sts_client():
    """Get the STS client."""
    return AWSClientManager().get_client('sts')


def get_elbv2_client():
    """Get the Elastic Load Balancing v2 client."""
    return AWSClientManager().get_client('elbv2')


def get_sqs_client():
    """Get the SQS client."""
    return AWSClientManager().get_client('sqs')


def error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


def platform_error(action: str, error: ClientError) -> PlatformError:
    """Log a ClientError and wrap it for the caller"""
    code = error_code(error)
    logger.error(f"{action} failed ({code}): {error}")
    return PlatformError(f"{action} failed: {error}", code=code)


def chunks(items: list, size: int):
    """Split a list into consecutive slices of at most size items"""
    for start in range(0, len(items), size):
        yield items[start:start + size]
