import os

import pytest
from moto import mock_aws

from ecs_deploy.aws.utils import AWSClientManager
from ecs_deploy.config.settings import get_settings

TEST_REGION = "us-east-1"


@pytest.fixture
def mocked_aws(monkeypatch):
    """Fake credentials and moto-backed AWS for the boto3 wrappers"""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", TEST_REGION)
    monkeypatch.delenv("AWS_ENDPOINT_URL", raising=False)
    monkeypatch.delenv("AWS_PROFILE", raising=False)
    get_settings.cache_clear()

    with mock_aws():
        yield

    AWSClientManager._instance = None
    AWSClientManager._clients = {}
    get_settings.cache_clear()
