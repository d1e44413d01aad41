from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class ResourceStatus(str, Enum):
    PENDING         = "Pending"
    CREATING        = "Creating"
    UPDATING        = "Updating"
    CREATED         = "Created"
    FAILED          = "Failed"
    ROLLING_BACK    = "RollingBack"
    ROLLED_BACK     = "RolledBack"
    ROLLBACK_FAILED = "RollbackFailed"
    DELETED         = "Deleted"


TERMINAL_STATUSES = {
    ResourceStatus.CREATED,
    ResourceStatus.ROLLED_BACK,
    ResourceStatus.ROLLBACK_FAILED,
    ResourceStatus.DELETED,
}


class OperationType(str, Enum):
    CREATE  = "Create"
    UPDATE  = "Update"
    REPLACE = "Replace"
    NOOP    = "NoOp"
    DELETE  = "Delete"


@dataclass
class RealizedResource:
    node_id: str
    kind: str
    identity: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    status: ResourceStatus = ResourceStatus.PENDING
    config: Dict[str, Any] = field(default_factory=dict)     # canonical desired config
    error: Optional[str] = None
    # generated secret material; in memory only, never persisted or reported
    secret_values: Dict[str, str] = field(default_factory=dict, repr=False)

    def get(self, attribute: Optional[str]) -> Any:
        """Return a realized attribute; None or 'identity' yields the identity."""
        if attribute in (None, "identity"):
            return self.identity
        return self.attributes.get(attribute)

    def to_dict(self) -> dict:
        return {
            "node_id": self.node_id,
            "kind": self.kind,
            "identity": self.identity,
            "attributes": dict(self.attributes),
            "status": self.status.value,
            "config": self.config,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RealizedResource":
        return cls(
            node_id=data["node_id"],
            kind=data.get("kind", ""),
            identity=data.get("identity"),
            attributes=dict(data.get("attributes") or {}),
            status=ResourceStatus(data.get("status", ResourceStatus.CREATED.value)),
            config=data.get("config") or {},
            error=data.get("error"),
        )


@dataclass(frozen=True)
class OutputBinding:
    name: str
    node_id: str
    attribute: str
    export_name: Optional[str] = None


@dataclass(frozen=True)
class Operation:
    op: OperationType
    node_id: str
    changed: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {"op": self.op.value, "node_id": self.node_id, "changed": list(self.changed)}
