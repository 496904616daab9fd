"""Loading flow graphs from JSON and YAML files."""

import json
from pathlib import Path
from typing import Any, Union

import structlog
import yaml

from flowbot_core.errors import GraphLoadError
from flowbot_core.flow.models import FlowGraph


logger = structlog.get_logger(__name__)

YAML_SUFFIXES = (".yaml", ".yml")


def parse_graph(text: str, fmt: str = "json") -> FlowGraph:
    """Parse a serialized flow graph.

    Args:
        text: Serialized graph
        fmt: "json" or "yaml"
    """
    try:
        if fmt == "yaml":
            data: Any = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise GraphLoadError(f"Invalid {fmt.upper()}: {e}") from e

    # Editor exports wrap the graph in {"flow": {...}}
    if isinstance(data, dict) and "nodes" not in data and isinstance(data.get("flow"), dict):
        data = data["flow"]

    return FlowGraph.from_dict(data)


def load_graph(path: Union[str, Path]) -> FlowGraph:
    """Load a flow graph file; the format follows the file suffix."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise GraphLoadError(f"Cannot read {path}: {e}") from e

    fmt = "yaml" if path.suffix.lower() in YAML_SUFFIXES else "json"
    graph = parse_graph(text, fmt)

    logger.debug(
        "flow_loaded",
        path=str(path),
        flow_id=graph.flow_id,
        nodes=len(graph.nodes),
        edges=len(graph.edges),
    )
    return graph
