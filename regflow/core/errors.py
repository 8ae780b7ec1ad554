"""Error taxonomy shared by the request controller and the API layer."""


class RegflowError(Exception):
    """Base class for errors surfaced to callers"""

    code = "UNKNOWN"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ValidationError(RegflowError):
    """Raised when a request name or owner is invalid"""

    code = "BAD_REQUEST"
    status_code = 400


class ConflictError(RegflowError):
    """Raised on duplicate names or decisions on an already decided request"""

    code = "CONFLICT"
    status_code = 409


class NotFoundError(RegflowError):
    """Raised when a request does not exist or an update touched no rows"""

    code = "NOT_FOUND"
    status_code = 404


class DependencyError(RegflowError):
    """Raised when a collaborator (provisioning, quota, mail, persistence) fails"""

    code = "DEPENDENCY_FAILURE"
    status_code = 502

    def __init__(self, message: str = "", cause: Exception = None):
        super().__init__(message)
        self.cause = cause
