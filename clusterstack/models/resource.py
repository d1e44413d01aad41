from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from clusterstack.errors import DuplicateIdError, InvalidConfigError
from clusterstack.models.realized import OutputBinding
from clusterstack.models.secret import SecretSpec


class ResourceKind(str, Enum):
    NETWORK         = "Network"
    COMPUTE_CLUSTER = "ComputeCluster"
    CAPACITY_POOL   = "CapacityPool"
    SECRET_STORE    = "SecretStore"
    CONTAINER_TASK  = "ContainerTask"
    SERVICE         = "Service"
    LOAD_BALANCER   = "LoadBalancer"
    LISTENER        = "Listener"
    OUTPUT          = "Output"


@dataclass(frozen=True)
class Ref:
    """Symbolic reference to another node; attribute=None means its identity."""

    node_id: str
    attribute: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.node_id}.{self.attribute}" if self.attribute else self.node_id


@dataclass(frozen=True)
class SecretField:
    """Reference to a single field of a SecretStore node."""

    node_id: str
    field: str

    def __str__(self) -> str:
        return f"{self.node_id}:{self.field}"


# Attributes each kind must declare. A tuple value lists the allowed types;
# Ref entries must hold a reference to another node.
REQUIRED_ATTRIBUTES: Dict[ResourceKind, Dict[str, Tuple[type, ...]]] = {
    ResourceKind.NETWORK:         {"cidr": (str,), "subnets": (list,)},
    ResourceKind.COMPUTE_CLUSTER: {"vpc": (Ref,)},
    ResourceKind.CAPACITY_POOL:   {"cluster": (Ref,), "instance_type": (str,)},
    ResourceKind.SECRET_STORE:    {"secret": (SecretSpec,)},
    ResourceKind.CONTAINER_TASK:  {"image": (str,), "memory_mib": (int,), "cpu": (int,),
                                   "port_mappings": (list,)},
    ResourceKind.SERVICE:         {"cluster": (Ref,), "task_definition": (Ref,),
                                   "desired_count": (int,)},
    ResourceKind.LOAD_BALANCER:   {"vpc": (Ref,)},
    ResourceKind.LISTENER:        {"load_balancer": (Ref,), "port": (int,), "protocol": (str,),
                                   "target": (Ref,)},
    ResourceKind.OUTPUT:          {"value": (Ref,)},
}


def _extract_refs(val: Any, refs: List[str]) -> None:
    """Recursively collect the node ids referenced anywhere inside a config value."""
    if isinstance(val, (Ref, SecretField)):
        refs.append(val.node_id)
    elif isinstance(val, dict):
        for v in val.values():
            _extract_refs(v, refs)
    elif isinstance(val, (list, tuple)):
        for item in val:
            _extract_refs(item, refs)


def _dedupe(ids: Iterable[str]) -> Tuple[str, ...]:
    seen = []
    for i in ids:
        if i not in seen:
            seen.append(i)
    return tuple(seen)


@dataclass(frozen=True)
class ResourceNode:
    node_id: str
    kind: ResourceKind
    config: Dict[str, Any] = field(default_factory=dict)
    depends_on: Tuple[str, ...] = ()
    index: int = 0               # declaration position within the graph

    @property
    def qualified_name(self) -> str:
        return f"{self.kind.value}.{self.node_id}"


def _validate(kind: ResourceKind, node_id: str, config: Dict[str, Any]) -> None:
    for attr, types in REQUIRED_ATTRIBUTES.get(kind, {}).items():
        if config.get(attr) is None:
            raise InvalidConfigError(f"{kind.value} '{node_id}' is missing required attribute '{attr}'")
        # bool is an int subclass; counts and ports must be real integers
        if int in types and isinstance(config[attr], bool):
            raise InvalidConfigError(f"{kind.value} '{node_id}': '{attr}' must be an integer")
        if not isinstance(config[attr], types):
            expected = " or ".join(t.__name__ for t in types)
            raise InvalidConfigError(
                f"{kind.value} '{node_id}': '{attr}' must be {expected}, "
                f"got {type(config[attr]).__name__}"
            )


class ResourceGraph:
    """
    The set of declared nodes for one provisioning run.

    A graph is an ordinary object passed around explicitly, so independent runs
    (and tests) never share declarations.
    """

    def __init__(self, name: str = "stack"):
        self.name = name
        self._nodes: Dict[str, ResourceNode] = {}

    def define_resource(
        self,
        kind: ResourceKind,
        node_id: str,
        config: Optional[Dict[str, Any]] = None,
        depends_on: Iterable[str] = (),
    ) -> ResourceNode:
        if not node_id:
            raise InvalidConfigError("Resource id must be a non-empty string")
        if node_id in self._nodes:
            raise DuplicateIdError(node_id)
        try:
            kind = ResourceKind(kind)
        except ValueError:
            raise InvalidConfigError(f"Unknown resource kind: {kind!r}") from None
        config = dict(config or {})
        _validate(kind, node_id, config)

        refs: List[str] = []
        _extract_refs(config, refs)
        deps = _dedupe(list(depends_on) + refs)
        if node_id in deps:
            raise InvalidConfigError(f"Resource '{node_id}' references itself")

        node = ResourceNode(
            node_id=node_id,
            kind=kind,
            config=config,
            depends_on=deps,
            index=len(self._nodes),
        )
        self._nodes[node_id] = node
        return node

    def get(self, node_id: str) -> ResourceNode:
        return self._nodes[node_id]

    def bindings(self) -> List[OutputBinding]:
        """Output bindings declared by the graph's Output nodes."""
        result = []
        for node in self:
            if node.kind != ResourceKind.OUTPUT:
                continue
            ref: Ref = node.config["value"]
            result.append(OutputBinding(
                name=node.node_id,
                node_id=ref.node_id,
                attribute=ref.attribute or "identity",
                export_name=node.config.get("export_name"),
            ))
        return result

    @property
    def nodes(self) -> List[ResourceNode]:
        return list(self._nodes.values())

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(list(self._nodes.values()))

    def __len__(self) -> int:
        return len(self._nodes)
