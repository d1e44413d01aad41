"""
JSON run report generator.
"""
import json
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional

from clusterstack import __version__
from clusterstack.engine.realize import RealizationReport
from clusterstack.models.realized import Operation, RealizedResource
from clusterstack.models.resource import ResourceGraph


def build_report(
    graph: ResourceGraph,
    realized: Mapping[str, RealizedResource],
    outputs: Optional[Dict[str, str]] = None,
    report: Optional[RealizationReport] = None,
    operations: Optional[List[Operation]] = None,
) -> str:
    document = {
        "meta": {
            "generated": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "stack": graph.name,
            "tool": "clusterstack",
            "version": __version__,
        },
        "resources": [
            {
                "node_id": node.node_id,
                "kind": node.kind.value,
                "depends_on": list(node.depends_on),
                "status": realized[node.node_id].status.value if node.node_id in realized else None,
                "identity": realized[node.node_id].identity if node.node_id in realized else None,
                "attributes": realized[node.node_id].attributes if node.node_id in realized else {},
            }
            for node in graph
        ],
        "plan": [op.to_dict() for op in operations or []],
        "outputs": outputs or {},
        "run": report.to_dict() if report else None,
    }
    return json.dumps(document, indent=2, default=str)
