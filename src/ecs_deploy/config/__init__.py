"""
Configuration management for the deploy controller.

Contains the Pydantic settings object shared by the orchestrator, the scaling
engine, the drain coordinator and the AWS client layer.
"""
