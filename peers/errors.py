class CoordinatorError(Exception):
    """Base class for client-side session errors."""


class MediaAccessDenied(CoordinatorError):
    """Camera or microphone could not be opened; the call does not start."""


class InvalidTransition(CoordinatorError):
    def __init__(self, remote_id: str, current, requested):
        super().__init__(f"Link to {remote_id}: cannot go from {current.value} to {requested.value}")
        self.remote_id = remote_id
        self.current = current
        self.requested = requested


class SignalingError(CoordinatorError):
    """The signaling transport is not available for sending."""
