"""Mermaid and JSON snapshot export for lineage graphs."""

from __future__ import annotations

import json
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from query_lineage import LineageBuildResult

_UNSAFE_ID_CHARS = re.compile(r"[^a-zA-Z0-9_]")

_NODE_CLASSES = {"Table": "table", "Query": "query", "Column": "column"}

_CLASS_DEFS = (
    "classDef table fill:#fff,stroke:#334155,stroke-width:2px;",
    "classDef query fill:#f8fafc,stroke:#0ea5e9,stroke-width:2px;",
    "classDef column fill:#fdf2f8,stroke:#ec4899,stroke-width:1.5px;",
)


def _mermaid_id(value: Any) -> str:
    return "n_" + _UNSAFE_ID_CHARS.sub("_", str(value))


def _mermaid_label(value: Any) -> str:
    return str(value).replace('"', "#quot;")


def _graph_data(graph: Union[LineageBuildResult, Mapping[str, Any]]) -> Mapping[str, Any]:
    if isinstance(graph, LineageBuildResult):
        return graph.graph.to_dict()
    if "graphData" in graph:
        return graph["graphData"]
    return graph


def graph_to_mermaid(graph: Union[LineageBuildResult, Mapping[str, Any]]) -> str:
    """Render a lineage graph as a left-to-right Mermaid flowchart."""
    data = _graph_data(graph)
    lines: List[str] = ["graph LR", "    %% Node Styles"]
    lines.extend(f"    {class_def}" for class_def in _CLASS_DEFS)

    for node in data.get("nodes", []):
        css = _NODE_CLASSES.get(node.get("node_type"), "table")
        label = _mermaid_label(node.get("name") or node.get("id"))
        lines.append(f'    {_mermaid_id(node["id"])}("{label}"):::{css}')

    for edge in data.get("edges", []):
        count = edge.get("execution_count") or 0
        label = edge.get("edge_type") or "Unknown"
        if count > 0:
            label = f"{label} x{count}"
        lines.append(f"    {_mermaid_id(edge['source'])} -->|{label}| {_mermaid_id(edge['target'])}")

    return "\n".join(lines) + "\n"


def build_snapshot(
    result: Union[LineageBuildResult, Mapping[str, Any]],
    filters: Optional[Mapping[str, Any]] = None,
    generated_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    if isinstance(result, LineageBuildResult):
        result = result.to_dict()
    generated_at = generated_at or datetime.now()
    return {
        "generatedAt": generated_at.isoformat(),
        "filters": dict(filters or {}),
        "stats": result.get("stats", {}),
        "graph": result.get("graphData", {}),
    }


def snapshot_filename(extension: str = "json", now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"lineage_graph_{now.strftime('%Y%m%d_%H%M%S')}.{extension.lstrip('.')}"


def write_snapshot(path: Union[str, Path], snapshot: Mapping[str, Any]) -> Path:
    target = Path(path)
    target.write_text(json.dumps(snapshot, indent=2), encoding="utf-8")
    return target
