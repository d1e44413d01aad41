"""clusterstack exceptions."""
from typing import List, Optional


class ClusterStackError(Exception):
    """Base exception for clusterstack errors."""

    pass


class DuplicateIdError(ClusterStackError):
    """Raised when a node id is declared twice in one graph."""

    def __init__(self, node_id: str):
        super().__init__(f"Resource '{node_id}' is already defined in this graph")
        self.node_id = node_id


class InvalidConfigError(ClusterStackError):
    """Raised when a node or topology configuration is incomplete or malformed."""

    pass


class CycleDetectedError(ClusterStackError):
    """Raised when the dependency graph has no topological order."""

    def __init__(self, cycle: List[str]):
        super().__init__("Dependency cycle between: " + ", ".join(cycle))
        self.cycle = list(cycle)


class MissingAttributeError(ClusterStackError):
    """Raised when a realized attribute is requested before it exists."""

    def __init__(self, node_id: str, attribute: Optional[str], reason: str = ""):
        label = f"{node_id}.{attribute}" if attribute else node_id
        message = f"Attribute '{label}' is not available"
        if reason:
            message += f" ({reason})"
        super().__init__(message)
        self.node_id = node_id
        self.attribute = attribute


class ResourceNotFoundError(ClusterStackError):
    """Raised by providers when an identity does not exist."""

    pass


class RunCancelledError(ClusterStackError):
    """Raised inside a run when the caller asked it to stop."""

    pass


class ProvisioningCallError(ClusterStackError):
    """
    A provisioning call (or the preparation of one) failed for a node.

    ``report`` carries the outcome of the compensating rollback once the
    realization engine has finished cleaning up.
    """

    def __init__(self, node_id: Optional[str], cause: BaseException, report=None):
        if node_id is None:
            message = f"Run stopped: {cause!r}"
        else:
            message = f"Provisioning '{node_id}' failed: {cause!r}"
        super().__init__(message)
        self.node_id = node_id
        self.cause = cause
        self.report = report


class RollbackFailedError(ClusterStackError):
    """A compensating delete did not succeed."""

    def __init__(self, node_id: str, cause: BaseException):
        super().__init__(f"Rollback of '{node_id}' failed: {cause!r}")
        self.node_id = node_id
        self.cause = cause
