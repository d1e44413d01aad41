from typing import Dict, Iterable, List, Mapping

from clusterstack.errors import MissingAttributeError
from clusterstack.models.realized import OutputBinding, RealizedResource, ResourceStatus
from clusterstack.models.resource import Ref, ResourceGraph, SecretField


def bindings_from_graph(graph: ResourceGraph) -> List[OutputBinding]:
    return graph.bindings()


def export_outputs(
    realized: Mapping[str, RealizedResource], bindings: Iterable[OutputBinding]
) -> Dict[str, str]:
    """
    Resolve each binding to a concrete value.

    Raises MissingAttributeError when the bound resource has not reached
    Created or does not carry the attribute.
    """
    outputs: Dict[str, str] = {}
    for binding in bindings:
        record = realized.get(binding.node_id)
        if record is None:
            raise MissingAttributeError(binding.node_id, binding.attribute, "resource is not realized")
        if record.status != ResourceStatus.CREATED:
            raise MissingAttributeError(
                binding.node_id, binding.attribute, f"resource is {record.status.value}"
            )
        value = record.get(binding.attribute)
        if value is None or isinstance(value, (Ref, SecretField)):
            raise MissingAttributeError(binding.node_id, binding.attribute)
        outputs[binding.name] = str(value)
    return outputs
