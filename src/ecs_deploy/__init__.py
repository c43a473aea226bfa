"""ECS deployment and fleet-scaling controller."""

__version__ = "0.1.0"
