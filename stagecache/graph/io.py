"""Stage graph loading and export.

This module provides helpers for reading stage graph descriptions from
YAML/JSON files and rendering them back to text.
"""

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from stagecache.graph.schema import StageGraphSchema


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the document is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_graph_data(data: dict[str, Any]) -> StageGraphSchema:
    """Parse and validate stage graph data.

    Args:
        data: Dictionary containing the graph description.

    Returns:
        Validated StageGraphSchema instance.

    Raises:
        pydantic.ValidationError: If data does not match the schema.
        GraphValidationError: If stage references are invalid.
    """
    graph = StageGraphSchema.model_validate(data)
    graph.validate_references()
    return graph


def load_graph(path: Path) -> StageGraphSchema:
    """Load and validate a stage graph from a YAML or JSON file.

    File format is determined by extension (.yaml, .yml for YAML,
    .json for JSON).

    Args:
        path: Path to the graph file.

    Returns:
        Validated StageGraphSchema instance.

    Raises:
        ValueError: If file extension is not supported.
        FileNotFoundError: If the file does not exist.
        pydantic.ValidationError: If data does not match the schema.
        GraphValidationError: If stage references are invalid.
    """
    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        data = load_yaml(path)
    elif suffix == ".json":
        data = load_json(path)
    else:
        raise ValueError(
            f"Unsupported file extension '{suffix}'. Use .yaml, .yml, or .json"
        )
    return parse_graph_data(data)


def graph_to_yaml_string(graph: StageGraphSchema) -> str:
    """Render a stage graph as YAML text."""
    data = graph.model_dump(mode="json", exclude_defaults=True)
    return yaml.dump(data, default_flow_style=False, allow_unicode=True, sort_keys=False)


def graph_digest(graph: StageGraphSchema) -> str:
    """Compute a stable digest of a graph description.

    Used to group build records of the same graph; step identities do
    not depend on it.
    """
    canonical = json.dumps(
        graph.model_dump(mode="json"), sort_keys=True, separators=(",", ":")
    )
    return f"sha256:{hashlib.sha256(canonical.encode('utf-8')).hexdigest()}"


__all__ = [
    "graph_digest",
    "graph_to_yaml_string",
    "load_graph",
    "load_json",
    "load_yaml",
    "parse_graph_data",
]
