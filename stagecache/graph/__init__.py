"""Stage graph module.

This module handles:
- Validation of stage graph descriptions
- Loading graphs from YAML/JSON files
- Access to the build context
"""

from stagecache.graph.context import BuildContext, BuildContextError
from stagecache.graph.io import (
    graph_digest,
    graph_to_yaml_string,
    load_graph,
    parse_graph_data,
)
from stagecache.graph.schema import (
    FileSourceSchema,
    GraphValidationError,
    MountCacheSchema,
    StageGraphSchema,
    StageSchema,
    StageSourceSchema,
    StepSchema,
)

__all__ = [
    "BuildContext",
    "BuildContextError",
    "FileSourceSchema",
    "GraphValidationError",
    "MountCacheSchema",
    "StageGraphSchema",
    "StageSchema",
    "StageSourceSchema",
    "StepSchema",
    "graph_digest",
    "graph_to_yaml_string",
    "load_graph",
    "parse_graph_data",
]
