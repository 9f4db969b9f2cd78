from typing import Optional


class DeployError(Exception):
    """Base exception for deployment orchestration errors."""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DeployError):
    """Missing or malformed input"""

    status_code = 400


class AuthError(DeployError):
    """Caller identity could not be resolved"""

    status_code = 401


class NotFoundError(DeployError):
    """No deployment row, or the resource was deleted upstream"""

    status_code = 404


class ConflictError(DeployError):
    """A build is already in progress for this resource"""

    status_code = 409


class UpstreamError(DeployError):
    """Non-2xx response from a backend call"""

    status_code = 502

    def __init__(self, message: str, upstream_status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.upstream_status = upstream_status
        self.body = body


class UpstreamTransientError(UpstreamError):
    """502/503 from a backend call that persisted through every retry"""

    status_code = 503


class ResourceAlreadyExistsError(UpstreamError):
    """Backend refused to create a resource because the name is taken"""

    status_code = 409
