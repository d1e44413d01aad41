"""
Desired-state vs last-known-state comparison.
"""
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set

from rich.console import Console

from clusterstack.errors import ResourceNotFoundError
from clusterstack.graph.resolver import resolve_order
from clusterstack.models.realized import Operation, OperationType, RealizedResource, ResourceStatus
from clusterstack.models.resource import Ref, ResourceGraph, ResourceKind, ResourceNode, SecretField
from clusterstack.models.secret import SecretSpec
from clusterstack.providers.base import ProvisioningApi

console = Console(stderr=True)

# Attributes the provider cannot change in place; a change forces a replacement.
IMMUTABLE_ATTRIBUTES: Dict[ResourceKind, Set[str]] = {
    ResourceKind.NETWORK:         {"cidr", "subnets", "name", "max_azs"},
    ResourceKind.COMPUTE_CLUSTER: {"vpc", "name"},
    ResourceKind.CAPACITY_POOL:   {"cluster", "instance_type", "name"},
    ResourceKind.SECRET_STORE:    {"secret"},
    ResourceKind.SERVICE:         {"cluster", "name"},
    ResourceKind.LOAD_BALANCER:   {"vpc", "internet_facing", "name"},
    ResourceKind.LISTENER:        {"load_balancer"},
    ResourceKind.OUTPUT:          set(),
}


def _is_immutable(kind: ResourceKind, attribute: str) -> bool:
    # task definitions are immutable revisions
    if kind == ResourceKind.CONTAINER_TASK:
        return True
    return attribute in IMMUTABLE_ATTRIBUTES.get(kind, set())


def canonical_value(val: Any) -> Any:
    """Render a config value as plain JSON data, keeping references symbolic."""
    if isinstance(val, Ref):
        return {"$ref": str(val)}
    if isinstance(val, SecretField):
        return {"$secret": str(val)}
    if isinstance(val, SecretSpec):
        return val.to_dict()
    if isinstance(val, timedelta):
        return int(val.total_seconds())
    if isinstance(val, Enum):
        return val.value
    if isinstance(val, dict):
        return {str(k): canonical_value(v) for k, v in val.items()}
    if isinstance(val, (list, tuple)):
        return [canonical_value(v) for v in val]
    return val


def canonical_config(node: ResourceNode) -> Dict[str, Any]:
    return {k: canonical_value(v) for k, v in node.config.items()}


def _referenced_ids(val: Any) -> Set[str]:
    if isinstance(val, (Ref, SecretField)):
        return {val.node_id}
    if isinstance(val, dict):
        return set().union(*(_referenced_ids(v) for v in val.values())) if val else set()
    if isinstance(val, (list, tuple)):
        return set().union(*(_referenced_ids(v) for v in val)) if val else set()
    return set()


def _changed_attributes(desired: Dict[str, Any], known: Dict[str, Any]) -> List[str]:
    keys = list(desired) + [k for k in known if k not in desired]
    return [k for k in keys if desired.get(k) != known.get(k)]


def plan(graph: ResourceGraph, last_known: Optional[Mapping[str, RealizedResource]] = None) -> List[Operation]:
    """
    Decide Create / Update / Replace / NoOp for every declared node, in
    realization order, followed by a Delete for every known resource that is no
    longer declared (last realized first).
    """
    last_known = last_known or {}
    operations: List[Operation] = []
    replaced: Set[str] = set()

    for node in resolve_order(graph):
        known = last_known.get(node.node_id)
        if known is None or known.status != ResourceStatus.CREATED or known.kind != node.kind.value:
            operations.append(Operation(OperationType.CREATE, node.node_id))
            replaced.add(node.node_id)
            continue

        changed = _changed_attributes(canonical_config(node), known.config)
        # a reference to a node that is being replaced resolves to a new value
        for attr, val in node.config.items():
            if attr not in changed and _referenced_ids(val) & replaced:
                changed.append(attr)

        if not changed:
            operations.append(Operation(OperationType.NOOP, node.node_id))
        elif any(_is_immutable(node.kind, attr) for attr in changed):
            operations.append(Operation(OperationType.REPLACE, node.node_id, tuple(changed)))
            replaced.add(node.node_id)
        else:
            operations.append(Operation(OperationType.UPDATE, node.node_id, tuple(changed)))

    orphans = [node_id for node_id in last_known if node_id not in graph]
    for node_id in reversed(orphans):
        operations.append(Operation(OperationType.DELETE, node_id))

    return operations


def refresh(
    last_known: Mapping[str, RealizedResource],
    provider: ProvisioningApi,
    console: Console = console,
) -> Dict[str, RealizedResource]:
    """Drop records whose resource has disappeared from the provider."""
    fresh: Dict[str, RealizedResource] = {}
    for node_id, record in last_known.items():
        if record.identity is None or record.kind == ResourceKind.OUTPUT.value:
            fresh[node_id] = record
            continue
        try:
            attributes = provider.describe(record.identity)
        except ResourceNotFoundError:
            console.print(f"[yellow]Warning:[/yellow] '{node_id}' ({record.identity}) no longer exists; it will be recreated.")
            continue
        record.attributes.update(attributes)
        fresh[node_id] = record
    return fresh
