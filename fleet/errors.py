class ControllerError(Exception):
    """Base class for fleet controller errors."""
    pass


class NotFound(ControllerError):
    """Raised when an instance, group or plan id is unknown."""
    pass


class RolloutInProgress(ControllerError):
    """Raised when a rollout is requested while another plan is active."""

    def __init__(self, active_plan_id: str):
        super().__init__(f"rollout {active_plan_id} is already in progress")
        self.active_plan_id = active_plan_id


class TransientProviderError(ControllerError):
    """Raised by compute providers for failures worth retrying."""
    pass


class ProviderError(ControllerError):
    """Raised by compute providers for failures that retrying will not fix."""
    pass


class RoutingApplyError(ControllerError):
    """Raised when a traffic weight change could not be applied."""
    pass


class HealthRegression(ControllerError):
    """A target group fell below its healthy threshold."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class CapacityBoundViolation(ControllerError):
    """A scaling decision fell outside [min_capacity, max_capacity] and was clamped."""

    def __init__(self, requested: int, clamped: int):
        super().__init__(f"requested {requested} instances, clamped to {clamped}")
        self.requested = requested
        self.clamped = clamped
