"""Desired-state parsing and dependency ordering."""

from converge_engine.planning.manifest import (
    Manifest,
    load_manifest,
    loads_manifest,
    parse_manifest,
)
from converge_engine.planning.resource_graph import (
    ResourceGraph,
    build_resource_graph,
    order_resources,
    parse_reference,
)

__all__ = [
    "Manifest",
    "ResourceGraph",
    "build_resource_graph",
    "load_manifest",
    "loads_manifest",
    "order_resources",
    "parse_manifest",
    "parse_reference",
]
