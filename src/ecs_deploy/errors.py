"""Error taxonomy shared by the orchestrator, the scaling engine and the drain coordinator."""


class ControllerError(Exception):
    """Base class for all controller errors"""
    pass


class InvalidSpec(ControllerError):
    """Caller input failed validation. Never retried."""
    pass


class PlatformError(ControllerError):
    """An AWS API call failed"""

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        self.code = code


class NotFound(ControllerError):
    """An expected resource is absent"""
    pass


class RolloutFailed(ControllerError):
    """Stability checks of a deployment did not pass"""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class NoRollbackTarget(ControllerError):
    """No successful prior deployment exists for the service"""
    pass


class CapacityBound(ControllerError):
    """The fleet is already at its minimum or maximum size"""
    pass


class InvalidEvent(ControllerError):
    """An inbound platform event could not be parsed"""
    pass


class StateError(ControllerError):
    """Raised for an invalid status transition"""
    pass
