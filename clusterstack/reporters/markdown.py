"""
Markdown + Mermaid run report generator.
"""
import re
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional

from jinja2 import Environment

from clusterstack import __version__
from clusterstack.engine.realize import RealizationReport
from clusterstack.models.realized import Operation, RealizedResource, ResourceStatus
from clusterstack.models.resource import ResourceGraph, ResourceKind, ResourceNode

_STATUS_EMOJI = {
    "Created": "🟢",
    "Pending": "⚪",
    "Failed": "🔴",
    "RolledBack": "🟡",
    "RollbackFailed": "🟠",
    "Deleted": "⚫",
}

_STATUS_ASCII = {
    "Created": "[OK]",
    "Pending": "[--]",
    "Failed": "[FAIL]",
    "RolledBack": "[ROLLED BACK]",
    "RollbackFailed": "[CLEANUP]",
    "Deleted": "[DELETED]",
}

_SUBGRAPH = {
    ResourceKind.NETWORK:         "Networking",
    ResourceKind.LOAD_BALANCER:   "Edge",
    ResourceKind.LISTENER:        "Edge",
    ResourceKind.COMPUTE_CLUSTER: "Compute",
    ResourceKind.CAPACITY_POOL:   "Compute",
    ResourceKind.CONTAINER_TASK:  "Compute",
    ResourceKind.SERVICE:         "Compute",
    ResourceKind.SECRET_STORE:    "Security",
    ResourceKind.OUTPUT:          "Outputs",
}

_STATUS_STYLE = {
    ResourceStatus.CREATED:         "fill:#88cc00,color:#000",
    ResourceStatus.FAILED:          "fill:#ff4444,color:#fff",
    ResourceStatus.ROLLED_BACK:     "fill:#ffcc00,color:#000",
    ResourceStatus.ROLLBACK_FAILED: "fill:#ff8800,color:#fff",
}


def _sanitize_node_id(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_]", "_", name)


def _node_shape(node: ResourceNode) -> str:
    label = f"{node.node_id}<br/>{node.kind.value}"
    if node.kind == ResourceKind.NETWORK:
        return f"{{{{{label}}}}}"
    if node.kind == ResourceKind.SECRET_STORE:
        return f"[({label})]"
    if node.kind == ResourceKind.LOAD_BALANCER:
        return f"(({label}))"
    if node.kind == ResourceKind.OUTPUT:
        return f"[/{label}/]"
    return f"[{label}]"


def build_mermaid(graph: ResourceGraph, realized: Optional[Mapping[str, RealizedResource]] = None) -> str:
    realized = realized or {}
    subgraphs: Dict[str, List[ResourceNode]] = defaultdict(list)
    for node in graph:
        subgraphs[_SUBGRAPH.get(node.kind, "Other")].append(node)

    lines = ["flowchart LR"]
    if any(n.kind == ResourceKind.LOAD_BALANCER and n.config.get("internet_facing") for n in graph):
        lines.append("    Internet((Internet))")

    for sg_name in ["Networking", "Edge", "Compute", "Security", "Outputs", "Other"]:
        members = subgraphs.get(sg_name, [])
        if not members:
            continue
        lines.append(f"    subgraph {sg_name}")
        for node in members:
            lines.append(f"        {_sanitize_node_id(node.node_id)}{_node_shape(node)}")
        lines.append("    end")

    # edges point from a resource to what it needs
    for node in graph:
        src = _sanitize_node_id(node.node_id)
        for dep in node.depends_on:
            lines.append(f"    {src} --> {_sanitize_node_id(dep)}")
        if node.kind == ResourceKind.LOAD_BALANCER and node.config.get("internet_facing"):
            lines.append(f"    Internet -->|HTTP| {src}")

    for node in graph:
        record = realized.get(node.node_id)
        style = _STATUS_STYLE.get(record.status) if record else None
        if style:
            lines.append(f"    style {_sanitize_node_id(node.node_id)} {style}")

    return "\n".join(lines)


_TEMPLATE = """\
# Deployment Report: {{ stack }}

**Generated:** {{ generated }}
**Tool:** clusterstack v{{ version }}

---

## Summary

{% if run is none %}
No realization has been run.
{% elif run.succeeded %}
All **{{ resources|length }} resources** are realized.
{% else %}
{% if run.failed_node is none %}
Realization was **stopped**: {{ run.cause }}
{% else %}
Realization **failed** at `{{ run.failed_node }}`: {{ run.cause }}
{% endif %}

{% if run.fully_rolled_back %}
Every resource created during the run was rolled back.
{% else %}
The following resources need manual cleanup:
{% for node_id in run.needs_manual_cleanup %}
- `{{ node_id }}`{% endfor %}
{% endif %}
{% endif %}

---

## Resources

| # | Resource | Kind | Status | Identity |
|---|----------|------|--------|----------|
{% for r in resources %}| {{ loop.index }} | `{{ r.node_id }}` | {{ r.kind }} | {{ status_icon.get(r.status, "") }} {{ r.status }} | {{ r.identity or "" }} |
{% endfor %}
{% if operations %}

---

## Plan

| Resource | Operation | Changed |
|----------|-----------|---------|
{% for op in operations %}| `{{ op.node_id }}` | {{ op.op.value }} | {{ op.changed|join(", ") }} |
{% endfor %}
{% endif %}
{% if outputs %}

---

## Outputs

| Name | Value |
|------|-------|
{% for name, value in outputs.items() %}| `{{ name }}` | {{ value }} |
{% endfor %}
{% endif %}

---

## Dependency Graph

```mermaid
{{ mermaid }}
```
"""


def build_report(
    graph: ResourceGraph,
    realized: Mapping[str, RealizedResource],
    outputs: Optional[Dict[str, str]] = None,
    report: Optional[RealizationReport] = None,
    operations: Optional[List[Operation]] = None,
    ascii_mode: bool = False,
) -> str:
    resources = []
    for node in graph:
        record = realized.get(node.node_id)
        resources.append({
            "node_id": node.node_id,
            "kind": node.kind.value,
            "status": record.status.value if record else ResourceStatus.PENDING.value,
            "identity": record.identity if record else None,
        })

    env = Environment(autoescape=False)
    template = env.from_string(_TEMPLATE)

    return template.render(
        stack=graph.name,
        generated=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        version=__version__,
        run=report,
        resources=resources,
        operations=operations or [],
        outputs=outputs or {},
        status_icon=_STATUS_ASCII if ascii_mode else _STATUS_EMOJI,
        mermaid=build_mermaid(graph, realized),
    )
