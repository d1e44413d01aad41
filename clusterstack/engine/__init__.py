"""Realization, diffing and output export."""

from .diff import canonical_config, plan, refresh
from .outputs import bindings_from_graph, export_outputs
from .realize import RealizationEngine, RealizationReport

__all__ = [
    "RealizationEngine",
    "RealizationReport",
    "canonical_config",
    "plan",
    "refresh",
    "bindings_from_graph",
    "export_outputs",
]
