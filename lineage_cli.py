"""Command line entry point that builds lineage from a history file."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

from lineage_export import build_snapshot, graph_to_mermaid, write_snapshot
from query_lineage import BuildOptions, ViewMode, build_lineage_graph

logger = logging.getLogger(__name__)

_HISTORY_KEYS = ("history", "historyEntries", "entries")


class HistoryFileError(Exception):
    """A history file could not be read or has no usable entry list."""


def load_history(path: Path) -> List[Any]:
    """Read history entries from a JSON array, an object holding one, or JSON Lines."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise HistoryFileError(f"Cannot read {path}: {exc}") from exc

    if Path(path).suffix.lower() == ".jsonl":
        entries = []
        for lineno, line in enumerate(text.splitlines(), 1):
            if not line.strip():
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError as exc:
                raise HistoryFileError(f"{path}:{lineno}: {exc.msg}") from exc
        return entries

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise HistoryFileError(f"{path}: {exc.msg} (line {exc.lineno})") from exc

    if isinstance(data, dict):
        for key in _HISTORY_KEYS:
            if isinstance(data.get(key), list):
                return data[key]
        raise HistoryFileError(f"{path}: expected one of {', '.join(_HISTORY_KEYS)}")
    if not isinstance(data, list):
        raise HistoryFileError(f"{path}: expected a JSON array of history entries")
    return data


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="query-lineage",
        description="Build a table/column lineage graph from a log of executed SQL statements.",
    )
    parser.add_argument("--history", required=True, type=Path, help="JSON, JSON object or .jsonl history file.")
    parser.add_argument(
        "--query-type",
        default="ALL",
        choices=["ALL", "SELECT", "INSERT", "UPDATE", "DELETE"],
        type=str.upper,
        help="Only keep statements of this type.",
    )
    parser.add_argument("--tables", default="", help="Comma-separated table name substrings to keep.")
    parser.add_argument("--schema", default=None, help="Schema for unqualified table names.")
    parser.add_argument(
        "--view-mode",
        default=ViewMode.FULL.value,
        choices=[mode.value for mode in ViewMode],
        type=str.upper,
    )
    parser.add_argument("--format", default="json", choices=["json", "mermaid", "snapshot"])
    parser.add_argument("-o", "--output", type=Path, help="Write to this file instead of stdout.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log per-entry skip decisions.")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    options = BuildOptions(
        query_type_filter=args.query_type,
        table_filter=args.tables,
        default_schema=args.schema,
        view_mode=args.view_mode,
    )

    try:
        entries = load_history(args.history)
        result = build_lineage_graph(entries, options)
    except HistoryFileError as exc:
        logger.error(str(exc))
        return 1

    if args.format == "mermaid":
        text = graph_to_mermaid(result)
    elif args.format == "snapshot":
        snapshot = build_snapshot(result, options.to_dict())
        if args.output:
            write_snapshot(args.output, snapshot)
            logger.info(f"Wrote snapshot to {args.output}")
            return 0
        text = json.dumps(snapshot, indent=2) + "\n"
    else:
        text = json.dumps(result.to_dict(), indent=2) + "\n"

    if args.output:
        args.output.write_text(text, encoding="utf-8")
        logger.info(f"Wrote {args.format} output to {args.output}")
    else:
        sys.stdout.write(text)
    return 0


if __name__ == "__main__":
    sys.exit(main())
