"""Thin boto3 wrappers around ECS, Auto Scaling, IAM and ELBv2."""
