"""Error taxonomy shared by the directory client, the cluster client and the reconciler."""


class ControllerError(Exception):
    """Base class for every error the controller knows how to classify"""

    reason = "Error"


class TransientError(ControllerError):
    """Network failure, timeout or server-side error; retry with backoff"""

    reason = "Transient"


class NotFoundError(ControllerError):
    """The remote entity does not exist"""

    reason = "NotFound"


class UnauthorizedError(ControllerError):
    """Credentials or permissions were rejected"""

    reason = "Unauthorized"


class ConflictError(ControllerError):
    """A cluster write lost an optimistic-concurrency race"""

    reason = "Conflict"


class ValidationError(ControllerError):
    """The declared spec cannot be applied as written"""

    reason = "InvalidSpec"


class DirectoryError(ControllerError):
    """The directory rejected a request for a reason we cannot classify further"""

    reason = "DirectoryError"
