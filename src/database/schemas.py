"""
JSON schemas for NoSQL document validation.
This module defines schemas for validating documents in the NoSQL collections.
"""

from typing import Dict, Any
import jsonschema


DEPLOYMENT_STATUSES = ["running", "success", "failed", "aborted"]
INSTANCE_STATUSES = ["ACTIVE", "DRAINING"]
SCALING_ACTIONS = ["none", "up", "down"]


DEPLOYMENT_JSON_SCHEMA = {
    "type": "object",
    "properties": {
        "deployment_id": {"type": "string", "minLength": 1},
        "service_name": {"type": "string", "minLength": 1},
        "cluster_name": {"type": "string", "minLength": 1},
        "time": {"type": "string", "minLength": 1},
        "task_definition_arn": {"type": "string"},
        "deploy_data": {
            "type": "object",
            "properties": {
                "cluster": {"type": "string", "minLength": 1},
                "containers": {"type": "array", "items": {"type": "object"}}
            },
            "required": ["cluster", "containers"]
        },
        "status": {"type": "string", "enum": DEPLOYMENT_STATUSES},
        "deploy_error": {"type": ["string", "null"]},
        "status_updated_at": {"type": ["string", "null"]}
    },
    "required": ["deployment_id", "service_name", "cluster_name", "time", "task_definition_arn", "deploy_data", "status"],
    "additionalProperties": False
}

SERVICE_JSON_SCHEMA = {
    "type": "object",
    "properties": {
        "service_name": {"type": "string", "minLength": 1},
        "cluster_name": {"type": "string", "minLength": 1},
        "listeners": {"type": "array", "items": {"type": "string"}},
        "cpu_reservation": {"type": "integer", "minimum": 0},
        "cpu_limit": {"type": "integer", "minimum": 0},
        "memory_reservation": {"type": "integer", "minimum": 0},
        "memory_limit": {"type": "integer", "minimum": 0},
        "desired_count": {"type": ["integer", "null"], "minimum": 0}
    },
    "required": ["service_name", "cluster_name"],
    "additionalProperties": False
}

CLUSTER_JSON_SCHEMA = {
    "type": "object",
    "properties": {
        "cluster_name": {"type": "string", "minLength": 1},
        "instances": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "instance_id": {"type": "string", "minLength": 1},
                    "cluster_name": {"type": "string"},
                    "availability_zone": {"type": "string"},
                    "free_cpu": {"type": "integer"},
                    "free_memory": {"type": "integer"},
                    "status": {"type": "string", "enum": INSTANCE_STATUSES}
                },
                "required": ["instance_id", "free_cpu", "free_memory", "status"],
                "additionalProperties": False
            }
        },
        "snapshot_at": {"type": ["string", "null"]},
        "last_scaling_action": {"type": "string", "enum": SCALING_ACTIONS},
        "last_scaling_at": {"type": ["string", "null"]},
        "last_decision": {"type": "string", "enum": SCALING_ACTIONS},
        "updated_at": {"type": ["string", "null"]}
    },
    "required": ["cluster_name", "instances"],
    "additionalProperties": False
}


def validate_deployment_document(document: Dict[str, Any]) -> None:
    """Validate deployment record document"""
    jsonschema.validate(document, DEPLOYMENT_JSON_SCHEMA)


def validate_service_document(document: Dict[str, Any]) -> None:
    """Validate service record document"""
    jsonschema.validate(document, SERVICE_JSON_SCHEMA)


def validate_cluster_document(document: Dict[str, Any]) -> None:
    """Validate cluster resource snapshot document"""
    jsonschema.validate(document, CLUSTER_JSON_SCHEMA)


# Schema registry
DOCUMENT_SCHEMAS = {
    'deployments': DEPLOYMENT_JSON_SCHEMA,
    'services': SERVICE_JSON_SCHEMA,
    'clusters': CLUSTER_JSON_SCHEMA,
}

DOCUMENT_VALIDATORS = {
    'deployments': validate_deployment_document,
    'services': validate_service_document,
    'clusters': validate_cluster_document,
}
