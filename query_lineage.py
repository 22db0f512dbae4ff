"""Lineage graph builder over a log of executed SQL statements."""

from __future__ import annotations

import collections.abc
import hashlib
import logging
import math
import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum, auto
from typing import Any, Dict, Iterable, Iterator, List, Mapping, NamedTuple, Optional, Set, Tuple

logger = logging.getLogger(__name__)

MAX_COLUMNS_PER_QUERY = 120
QUERY_PREVIEW_LIMIT = 92


class QueryType(Enum):
    SELECT = "SELECT"
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    OTHER = "OTHER"


class EdgeType(Enum):
    SELECT = "Select"
    INSERT = "Insert"
    UPDATE = "Update"
    DELETE = "Delete"
    UNKNOWN = "Unknown"


class NodeType(Enum):
    TABLE = "Table"
    COLUMN = "Column"
    QUERY = "Query"


class ViewMode(Enum):
    FULL = "FULL"
    TABLE_QUERY = "TABLE_QUERY"
    TABLE_ONLY = "TABLE_ONLY"


class SkipReason(Enum):
    EMPTY_QUERY = "emptyQuery"
    MULTI_STATEMENT = "multiStatement"
    UNSUPPORTED_TYPE = "unsupportedType"
    NO_TABLE_REFERENCE = "noTableReference"
    FILTERED_OUT = "filteredOut"
    PARSE_ERROR = "parseError"


SUPPORTED_QUERY_TYPES = {QueryType.SELECT, QueryType.INSERT, QueryType.UPDATE, QueryType.DELETE}

_EDGE_TYPE_BY_QUERY = {
    QueryType.SELECT: EdgeType.SELECT,
    QueryType.INSERT: EdgeType.INSERT,
    QueryType.UPDATE: EdgeType.UPDATE,
    QueryType.DELETE: EdgeType.DELETE,
}

SQL_KEYWORDS = frozenset({
    "SELECT", "FROM", "WHERE", "GROUP", "ORDER", "LIMIT", "HAVING", "DISTINCT",
    "JOIN", "LEFT", "RIGHT", "INNER", "OUTER", "FULL", "CROSS", "ON", "AS",
    "WITH", "UNION", "ALL", "INSERT", "INTO", "VALUES", "UPDATE", "SET", "DELETE",
    "CREATE", "ALTER", "DROP", "TRUNCATE", "RETURNING", "USING", "RECURSIVE",
    "MATERIALIZED", "NOT", "NULL", "AND", "OR", "CASE", "WHEN", "THEN", "ELSE",
    "END", "OVER", "PARTITION", "BY", "NATURAL", "LATERAL", "OFFSET", "FETCH",
    "EXCEPT", "INTERSECT", "IN", "IS", "LIKE", "BETWEEN", "EXISTS",
})


# ---------------------------------------------------------------------------
# Input and options
# ---------------------------------------------------------------------------

_DURATION_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("resources", "execution_time_ms"),
    ("resources", "executionTimeMs"),
    ("duration_ms",),
    ("durationMs",),
    ("duration",),
)


def _lookup_path(raw: Mapping[str, Any], path: Tuple[str, ...]) -> Any:
    value: Any = raw
    for key in path:
        if not isinstance(value, collections.abc.Mapping):
            return None
        value = value.get(key)
    return value


def _coerce_duration(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number) or number < 0:
        return 0.0
    return number


@dataclass(frozen=True)
class HistoryEntry:
    """One previously executed statement plus its timing."""

    sql: str
    duration_ms: float = 0.0
    query_hash: Optional[str] = None

    @classmethod
    def coerce(cls, raw: Any) -> HistoryEntry:
        if isinstance(raw, HistoryEntry):
            return raw
        if isinstance(raw, str):
            return cls(sql=raw)
        if not isinstance(raw, collections.abc.Mapping):
            return cls(sql="")

        sql = raw.get("exact_query")
        if sql is None:
            sql = raw.get("sql")

        duration: Any = None
        for path in _DURATION_PATHS:
            duration = _lookup_path(raw, path)
            if duration is not None:
                break

        query_hash = raw.get("query_hash")
        return cls(
            sql="" if sql is None else str(sql),
            duration_ms=_coerce_duration(duration),
            query_hash=str(query_hash) if query_hash else None,
        )


def _coerce_view_mode(value: Any) -> ViewMode:
    if isinstance(value, ViewMode):
        return value
    if isinstance(value, str):
        try:
            return ViewMode[value.strip().upper()]
        except KeyError:
            pass
    return ViewMode.FULL


@dataclass
class BuildOptions:
    query_type_filter: str = "ALL"
    table_filter: str = ""
    default_schema: Optional[str] = None
    view_mode: ViewMode = ViewMode.FULL

    def __post_init__(self) -> None:
        self.query_type_filter = str(self.query_type_filter or "ALL").strip().upper()
        self.table_filter = str(self.table_filter or "")
        schema = str(self.default_schema or "").strip()
        self.default_schema = schema.lower() or None
        self.view_mode = _coerce_view_mode(self.view_mode)

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> BuildOptions:
        if isinstance(raw, BuildOptions):
            return raw
        if not raw:
            return cls()

        def pick(camel: str, snake: str) -> Any:
            if camel in raw:
                return raw[camel]
            return raw.get(snake)

        return cls(
            query_type_filter=pick("queryTypeFilter", "query_type_filter") or "ALL",
            table_filter=pick("tableFilter", "table_filter") or "",
            default_schema=pick("defaultSchema", "default_schema"),
            view_mode=pick("viewMode", "view_mode") or ViewMode.FULL,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "queryTypeFilter": self.query_type_filter,
            "tableFilter": self.table_filter,
            "defaultSchema": self.default_schema,
            "viewMode": self.view_mode.value,
        }

    def table_filter_tokens(self) -> List[str]:
        tokens = [token.strip().lower() for token in self.table_filter.split(",")]
        return [token for token in tokens if token]


# ---------------------------------------------------------------------------
# Scanner primitives
# ---------------------------------------------------------------------------

class ScanState(Enum):
    NORMAL = auto()
    LINE_COMMENT = auto()
    BLOCK_COMMENT = auto()
    QUOTE = auto()


class ScanPosition(NamedTuple):
    index: int
    char: str
    state: ScanState
    quote: str


_QUOTE_CHARS = "'\"`"


def scan_sql(text: str, start: int = 0) -> Iterator[ScanPosition]:
    """Walk ``text`` from ``start`` reporting the lexical state of each char.

    Comment and quote delimiters belong to the comment or quote they open
    and close. Inside a quote a backslash escapes the next character.
    """
    state = ScanState.NORMAL
    quote = ""
    escaped = False
    length = len(text)
    i = start
    while i < length:
        ch = text[i]
        nxt = text[i + 1] if i + 1 < length else ""

        if state is ScanState.QUOTE:
            yield ScanPosition(i, ch, state, quote)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                state = ScanState.NORMAL
                quote = ""
            i += 1
            continue

        if state is ScanState.LINE_COMMENT:
            if ch == "\n":
                state = ScanState.NORMAL
                continue
            yield ScanPosition(i, ch, state, "")
            i += 1
            continue

        if state is ScanState.BLOCK_COMMENT:
            if ch == "*" and nxt == "/":
                yield ScanPosition(i, ch, state, "")
                yield ScanPosition(i + 1, nxt, state, "")
                state = ScanState.NORMAL
                i += 2
                continue
            yield ScanPosition(i, ch, state, "")
            i += 1
            continue

        if ch in _QUOTE_CHARS:
            state = ScanState.QUOTE
            quote = ch
            yield ScanPosition(i, ch, state, quote)
            i += 1
            continue
        if ch == "-" and nxt == "-":
            state = ScanState.LINE_COMMENT
            continue
        if ch == "/" and nxt == "*":
            state = ScanState.BLOCK_COMMENT
            yield ScanPosition(i, ch, state, "")
            yield ScanPosition(i + 1, nxt, state, "")
            i += 2
            continue

        yield ScanPosition(i, ch, state, "")
        i += 1


def strip_comments(sql: str) -> str:
    out: List[str] = []
    in_block = False
    for pos in scan_sql(str(sql or "")):
        if pos.state is ScanState.BLOCK_COMMENT:
            in_block = True
            continue
        if in_block:
            out.append(" ")
            in_block = False
        if pos.state is not ScanState.LINE_COMMENT:
            out.append(pos.char)
    if in_block:
        out.append(" ")
    return "".join(out)


def has_multiple_statements(sql: str) -> bool:
    depth = 0
    terminated = False
    for pos in scan_sql(str(sql or "")):
        if pos.state in (ScanState.LINE_COMMENT, ScanState.BLOCK_COMMENT):
            continue
        if terminated:
            if pos.state is ScanState.NORMAL and (pos.char == ";" or pos.char.isspace()):
                continue
            return True
        if pos.state is not ScanState.NORMAL:
            continue
        if pos.char == "(":
            depth += 1
        elif pos.char == ")":
            depth = max(0, depth - 1)
        elif pos.char == ";" and depth == 0:
            terminated = True
    return False


def split_top_level_by_comma(text: str) -> List[str]:
    chunks: List[str] = []
    current: List[str] = []
    depth = 0

    def flush() -> None:
        chunk = "".join(current).strip()
        if chunk:
            chunks.append(chunk)
        current.clear()

    for pos in scan_sql(text):
        if pos.state is ScanState.NORMAL:
            if pos.char == "(":
                depth += 1
            elif pos.char == ")":
                depth = max(0, depth - 1)
            elif pos.char == "," and depth == 0:
                flush()
                continue
        current.append(pos.char)
    flush()
    return chunks


def skip_balanced_parenthesis(text: str, start: int) -> int:
    if start >= len(text) or text[start] != "(":
        return start
    depth = 0
    for pos in scan_sql(text, start):
        if pos.state is not ScanState.NORMAL:
            continue
        if pos.char == "(":
            depth += 1
        elif pos.char == ")":
            depth -= 1
            if depth == 0:
                return pos.index + 1
    return len(text)


_TOKEN_RE = re.compile(r"\s*([`\"A-Za-z0-9_.$]+)")


def read_token(text: str, start: int) -> Tuple[str, int]:
    match = _TOKEN_RE.match(text, start)
    if not match:
        return "", start
    return match.group(1), match.end()


def mask_string_literals(sql: str) -> str:
    out: List[str] = []
    for pos in scan_sql(sql):
        if pos.state is ScanState.QUOTE and pos.quote == "'" and pos.char != "'":
            out.append(" ")
        else:
            out.append(pos.char)
    return "".join(out)


def _top_level_clause(
    text: str,
    opener: str,
    terminators: Set[str],
    require_terminator: bool = False,
) -> str:
    depth = 0
    clause_start: Optional[int] = None
    word_start = -1
    for pos in scan_sql(text + " "):
        if pos.state is ScanState.NORMAL and (pos.char.isalnum() or pos.char == "_"):
            if word_start < 0:
                word_start = pos.index
            continue
        if word_start >= 0:
            word = text[word_start:pos.index].upper()
            begin = word_start
            word_start = -1
            if depth == 0:
                if clause_start is None and word == opener:
                    clause_start = pos.index
                elif clause_start is not None and word in terminators:
                    return text[clause_start:begin].strip()
        if pos.state is ScanState.NORMAL:
            if pos.char == "(":
                depth += 1
            elif pos.char == ")":
                depth = max(0, depth - 1)
    if clause_start is None or require_terminator:
        return ""
    return text[clause_start:].strip()


# ---------------------------------------------------------------------------
# Identifiers, CTEs and table resolution
# ---------------------------------------------------------------------------

_EDGE_JUNK_RE = re.compile(r"^[`\"'()\[\]]+|[`\"'()\[\];,]+$")


def sanitize_identifier(value: Any) -> str:
    return _EDGE_JUNK_RE.sub("", str(value or "").strip()).strip()


@dataclass(frozen=True)
class TableRef:
    schema: Optional[str]
    table: str

    @property
    def id(self) -> str:
        return f"{self.schema}.{self.table}" if self.schema else self.table


def parse_table_token(raw: str, default_schema: Optional[str] = None) -> Optional[TableRef]:
    cleaned = sanitize_identifier(raw)
    if not cleaned:
        return None
    segments = [sanitize_identifier(part) for part in cleaned.split(".")]
    segments = [part for part in segments if part]
    if not segments:
        return None

    if len(segments) >= 2:
        schema: Optional[str] = segments[-2].lower()
        table = segments[-1].lower()
    else:
        schema = default_schema.lower() if default_schema else None
        table = segments[0].lower()

    if not table or table.upper() in SQL_KEYWORDS:
        return None
    return TableRef(schema, table)


def _is_cte(raw: str, cte_names: Set[str]) -> bool:
    cleaned = sanitize_identifier(raw).lower()
    return "." not in cleaned and cleaned in cte_names


def table_ref_from_id(table_id: str) -> TableRef:
    segments = str(table_id or "").lower().split(".")
    if len(segments) >= 2:
        return TableRef(segments[-2], segments[-1])
    return TableRef(None, segments[0])


_WITH_RE = re.compile(r"WITH\b", re.IGNORECASE)
_RECURSIVE_RE = re.compile(r"\s+RECURSIVE\b", re.IGNORECASE)
_AS_RE = re.compile(r"AS\b", re.IGNORECASE)


def _skip_whitespace(text: str, cursor: int, extra: str = "") -> int:
    while cursor < len(text) and (text[cursor].isspace() or text[cursor] in extra):
        cursor += 1
    return cursor


def extract_cte_names(sql: str) -> Set[str]:
    names: Set[str] = set()
    text = strip_comments(sql)
    cursor = _skip_whitespace(text, 0)
    if not _WITH_RE.match(text, cursor):
        return names

    cursor += 4
    recursive = _RECURSIVE_RE.match(text, cursor)
    if recursive:
        cursor = recursive.end()

    while cursor < len(text):
        cursor = _skip_whitespace(text, cursor, ",")
        if cursor >= len(text):
            break

        token, cursor = read_token(text, cursor)
        name = sanitize_identifier(token).lower()
        if not name:
            break
        names.add(name)

        cursor = _skip_whitespace(text, cursor)
        if cursor < len(text) and text[cursor] == "(":
            cursor = skip_balanced_parenthesis(text, cursor)

        cursor = _skip_whitespace(text, cursor)
        as_match = _AS_RE.match(text, cursor)
        if not as_match:
            break
        cursor = _skip_whitespace(text, as_match.end())
        if cursor >= len(text) or text[cursor] != "(":
            break
        cursor = _skip_whitespace(text, skip_balanced_parenthesis(text, cursor))
        if cursor >= len(text) or text[cursor] != ",":
            break
        cursor += 1

    return names


@dataclass
class AliasContext:
    """Alias map and tables in scope for a single statement."""

    aliases: Dict[str, str] = field(default_factory=dict)
    tables: List[str] = field(default_factory=list)

    def add_table(self, table_id: str) -> None:
        if table_id not in self.tables:
            self.tables.append(table_id)

    def sole_table(self) -> Optional[str]:
        return self.tables[0] if len(self.tables) == 1 else None


_TABLE_TOKEN = r"[`\"A-Za-z0-9_.]+"
_KEYWORD_ALTERNATION = "|".join(sorted(SQL_KEYWORDS))
_ALIAS_TAIL = rf"(?:\s+(?:AS\s+)?(?!(?:{_KEYWORD_ALTERNATION})\b)([A-Za-z_][A-Za-z0-9_]*))?"

_TABLE_CLAUSE_RE = re.compile(
    rf"\b(?:FROM|JOIN|UPDATE|INTO|USING)\s+({_TABLE_TOKEN}){_ALIAS_TAIL}",
    re.IGNORECASE,
)
_DELETE_CLAUSE_RE = re.compile(
    rf"\bDELETE\s+FROM\s+({_TABLE_TOKEN}){_ALIAS_TAIL}",
    re.IGNORECASE,
)


def collect_alias_context(
    sql: str,
    default_schema: Optional[str] = None,
    cte_names: Iterable[str] = (),
) -> AliasContext:
    ctes = set(cte_names)
    context = AliasContext()
    seen_aliases: Set[str] = set()

    def register(raw_table: str, raw_alias: Optional[str]) -> None:
        parsed = parse_table_token(raw_table, default_schema)
        if parsed is None or _is_cte(raw_table, ctes):
            return

        context.add_table(parsed.id)
        context.aliases[parsed.table] = parsed.id
        context.aliases[parsed.id] = parsed.id

        alias = sanitize_identifier(raw_alias).lower()
        if alias and alias.upper() not in SQL_KEYWORDS and alias not in seen_aliases:
            seen_aliases.add(alias)
            context.aliases[alias] = parsed.id

    for pattern in (_TABLE_CLAUSE_RE, _DELETE_CLAUSE_RE):
        for match in pattern.finditer(sql):
            register(match.group(1), match.group(2))
    return context


def resolve_table_id(
    raw: str,
    context: AliasContext,
    default_schema: Optional[str] = None,
    cte_names: Iterable[str] = (),
) -> Optional[str]:
    ctes = set(cte_names)
    cleaned = sanitize_identifier(raw).lower()
    if not cleaned or cleaned in ctes:
        return None
    if cleaned in context.aliases:
        return context.aliases[cleaned]
    if cleaned in context.tables:
        return cleaned

    parsed = parse_table_token(cleaned, default_schema)
    if parsed is None:
        return None
    if parsed.id in context.tables:
        return parsed.id
    return context.sole_table()


# ---------------------------------------------------------------------------
# Classification and write targets
# ---------------------------------------------------------------------------

def detect_query_type(sql: str) -> QueryType:
    upper = str(sql or "").strip().upper()
    if upper.startswith("SELECT") or upper.startswith("WITH"):
        return QueryType.SELECT
    if upper.startswith("INSERT"):
        return QueryType.INSERT
    if upper.startswith("UPDATE"):
        return QueryType.UPDATE
    if upper.startswith("DELETE"):
        return QueryType.DELETE
    return QueryType.OTHER


_WRITE_TARGET_RES = {
    QueryType.INSERT: re.compile(rf"\bINSERT\s+INTO\s+({_TABLE_TOKEN})", re.IGNORECASE),
    QueryType.UPDATE: re.compile(rf"\bUPDATE\s+({_TABLE_TOKEN})", re.IGNORECASE),
    QueryType.DELETE: re.compile(rf"\bDELETE\s+FROM\s+({_TABLE_TOKEN})", re.IGNORECASE),
}


def collect_write_targets(
    sql: str,
    query_type: QueryType,
    default_schema: Optional[str] = None,
    cte_names: Iterable[str] = (),
) -> List[str]:
    pattern = _WRITE_TARGET_RES.get(query_type)
    if pattern is None:
        return []
    match = pattern.search(sql)
    if not match:
        return []
    parsed = parse_table_token(match.group(1), default_schema)
    if parsed is None or _is_cte(match.group(1), set(cte_names)):
        return []
    return [parsed.id]


# ---------------------------------------------------------------------------
# Column references
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ColumnRef:
    table_id: str
    column: str


_PART = r"[`\"A-Za-z_][`\"A-Za-z0-9_]*"
_NOT_CALL = r"(?![`\"\w]|\s*\()"
_TRIPLE_RE = re.compile(rf"(?<![\w$])({_PART})\s*\.\s*({_PART})\s*\.\s*({_PART}){_NOT_CALL}")
_DOUBLE_RE = re.compile(rf"(?<![\w$])({_PART})\s*\.\s*({_PART}){_NOT_CALL}")
_COLUMN_NAME_RE = re.compile(r"^[^\W\d][\w$]*$")

_PROJECTION_PREFIX_RE = re.compile(r"^(?:DISTINCT|ALL)\b\s*", re.IGNORECASE)
_ALIAS = r"(?:\"[^\"]*\"|`[^`]*`|[A-Za-z_][A-Za-z0-9_]*)"
_AS_ALIAS_RE = re.compile(rf"\s+AS\s+{_ALIAS}$", re.IGNORECASE)
_BARE_ALIAS_RE = re.compile(rf"\s+{_ALIAS}$")
_BARE_IDENTIFIER_RE = re.compile(r"^[`\"]?[A-Za-z_][A-Za-z0-9_$]*[`\"]?$")

_INSERT_COLUMNS_RE = re.compile(rf"\bINSERT\s+INTO\s+({_TABLE_TOKEN})\s*(?=\()", re.IGNORECASE)
_QUERY_BODY_RE = re.compile(r"^\s*(?:SELECT|WITH|VALUES)\b", re.IGNORECASE)
_SET_TERMINATORS = {"WHERE", "FROM", "RETURNING", "ORDER", "LIMIT"}


def _clean_column(value: Any) -> Optional[str]:
    column = sanitize_identifier(value).lower()
    if not column or column.upper() in SQL_KEYWORDS:
        return None
    if not _COLUMN_NAME_RE.match(column):
        return None
    return column


def _append_ref(refs: List[ColumnRef], table_id: Optional[str], column: Any) -> None:
    cleaned = _clean_column(column)
    if table_id and cleaned:
        refs.append(ColumnRef(table_id, cleaned))


def _dotted_refs(
    text: str,
    context: AliasContext,
    default_schema: Optional[str],
    cte_names: Set[str],
) -> List[ColumnRef]:
    refs: List[ColumnRef] = []
    for match in _TRIPLE_RE.finditer(text):
        schema, table, column = (sanitize_identifier(part).lower() for part in match.groups())
        if not schema or not table or table in cte_names:
            continue
        if f"{table}.{column}" in context.tables:
            continue
        _append_ref(refs, f"{schema}.{table}", column)

    remainder = _TRIPLE_RE.sub(" ", text)
    for match in _DOUBLE_RE.finditer(remainder):
        qualifier, column = (sanitize_identifier(part).lower() for part in match.groups())
        if not qualifier or not column:
            continue
        if f"{qualifier}.{column}" in context.tables:
            continue
        _append_ref(refs, resolve_table_id(qualifier, context, default_schema, cte_names), column)
    return refs


def collect_qualified_read_columns(
    sql: str,
    context: AliasContext,
    default_schema: Optional[str] = None,
    cte_names: Iterable[str] = (),
) -> List[ColumnRef]:
    return _dotted_refs(mask_string_literals(sql), context, default_schema, set(cte_names))


def extract_top_level_select_projection(sql: str) -> str:
    return _top_level_clause(strip_comments(sql), "SELECT", {"FROM"}, require_terminator=True)


def _strip_projection_alias(chunk: str) -> str:
    chunk = _AS_ALIAS_RE.sub("", chunk).strip()
    match = _BARE_ALIAS_RE.search(chunk)
    if not match:
        return chunk
    head = chunk[:match.start()].strip()
    if not head or "(" in head or ")" in head:
        return chunk
    if "." in head or _BARE_IDENTIFIER_RE.match(head):
        return head
    return chunk


def collect_projection_columns(
    sql: str,
    context: AliasContext,
    default_schema: Optional[str] = None,
    cte_names: Iterable[str] = (),
    fallback_table: Optional[str] = None,
) -> List[ColumnRef]:
    """Columns named in the outermost SELECT list.

    A bare column is attributed to ``fallback_table``, which defaults to the
    sole table in scope.
    """
    ctes = set(cte_names)
    refs: List[ColumnRef] = []
    projection = _PROJECTION_PREFIX_RE.sub("", extract_top_level_select_projection(sql))
    if not projection:
        return refs
    if fallback_table is None:
        fallback_table = context.sole_table()

    for raw_chunk in split_top_level_by_comma(mask_string_literals(projection)):
        chunk = _strip_projection_alias(raw_chunk.strip())
        if not chunk:
            continue
        qualified = _dotted_refs(chunk, context, default_schema, ctes)
        if qualified:
            refs.extend(qualified)
            continue
        if fallback_table:
            _append_ref(refs, fallback_table, chunk)
    return refs


def collect_write_columns(
    sql: str,
    query_type: QueryType,
    write_targets: List[str],
    context: AliasContext,
    default_schema: Optional[str] = None,
    cte_names: Iterable[str] = (),
) -> List[ColumnRef]:
    ctes = set(cte_names)
    refs: List[ColumnRef] = []
    primary = write_targets[0] if write_targets else None

    if query_type is QueryType.INSERT:
        match = _INSERT_COLUMNS_RE.search(sql)
        if not match:
            return refs
        open_index = match.end()
        close_index = skip_balanced_parenthesis(sql, open_index)
        inner = sql[open_index + 1:close_index - 1]
        if _QUERY_BODY_RE.match(inner):
            return refs

        parsed = parse_table_token(match.group(1), default_schema)
        if parsed is None or _is_cte(match.group(1), ctes):
            return refs
        for chunk in split_top_level_by_comma(inner):
            _append_ref(refs, parsed.id or primary, chunk)
        return refs

    if query_type is QueryType.UPDATE:
        set_clause = _top_level_clause(sql, "SET", _SET_TERMINATORS)
        for assignment in split_top_level_by_comma(set_clause):
            lhs = assignment.split("=", 1)[0].strip()
            if not lhs:
                continue
            parts = lhs.split(".")
            if len(parts) >= 2:
                table_id = resolve_table_id(parts[-2], context, default_schema, ctes) or primary
                _append_ref(refs, table_id, parts[-1])
            else:
                _append_ref(refs, primary, lhs)
    return refs


def dedupe_column_refs(refs: Iterable[ColumnRef], limit: int = MAX_COLUMNS_PER_QUERY) -> List[ColumnRef]:
    seen: Set[Tuple[str, str]] = set()
    unique: List[ColumnRef] = []
    for ref in refs:
        key = (ref.table_id.lower(), ref.column.lower())
        if key in seen:
            continue
        seen.add(key)
        unique.append(ref)
        if len(unique) >= limit:
            break
    return unique


# ---------------------------------------------------------------------------
# Per-statement analysis
# ---------------------------------------------------------------------------

@dataclass
class StatementAnalysis:
    """Everything one statement contributes to the graph."""

    query_type: QueryType
    tables: List[str]
    write_targets: List[str]
    read_columns: List[ColumnRef] = field(default_factory=list)
    write_columns: List[ColumnRef] = field(default_factory=list)

    @property
    def read_tables(self) -> List[str]:
        return [table_id for table_id in self.tables if table_id not in self.write_targets]


def analyze_statement(
    sql: str,
    query_type: QueryType,
    default_schema: Optional[str] = None,
    include_columns: bool = True,
) -> StatementAnalysis:
    """Resolve tables and columns for one comment-stripped statement."""
    cte_names = extract_cte_names(sql)
    context = collect_alias_context(sql, default_schema, cte_names)
    write_targets = collect_write_targets(sql, query_type, default_schema, cte_names)
    for table_id in write_targets:
        context.add_table(table_id)

    analysis = StatementAnalysis(query_type, list(context.tables), write_targets)
    if not include_columns or not analysis.tables:
        return analysis

    read_tables = analysis.read_tables
    projection_table = read_tables[0] if len(read_tables) == 1 else None
    if not write_targets:
        projection_table = context.sole_table()

    analysis.read_columns = dedupe_column_refs(
        collect_qualified_read_columns(sql, context, default_schema, cte_names)
        + collect_projection_columns(sql, context, default_schema, cte_names, projection_table)
    )
    analysis.write_columns = dedupe_column_refs(
        collect_write_columns(sql, query_type, write_targets, context, default_schema, cte_names)
    )
    return analysis


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------

def _round(value: float, digits: int = 2) -> float:
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(float(value or 0)).quantize(quantum, rounding=ROUND_HALF_UP))


def content_hash(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8", "surrogatepass")).hexdigest()[:12]


def summarize_query(query: str) -> str:
    normalized = " ".join(str(query or "").split())
    if not normalized:
        return "Query"
    if len(normalized) > QUERY_PREVIEW_LIMIT:
        return f"{normalized[:QUERY_PREVIEW_LIMIT - 3]}..."
    return normalized


@dataclass
class Node:
    id: str
    name: str
    schema: Optional[str]
    node_type: NodeType
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "schema": self.schema,
            "node_type": self.node_type.value,
        }
        data.update(self.extra)
        return data


@dataclass
class Edge:
    source: str
    target: str
    edge_type: EdgeType
    execution_count: int = 0
    total_duration_ms: float = 0.0
    avg_duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "edge_type": self.edge_type.value,
            "execution_count": self.execution_count,
            "total_duration_ms": self.total_duration_ms,
            "avg_duration_ms": self.avg_duration_ms,
        }


@dataclass
class QueryAggregate:
    id: str
    query: str
    query_type: QueryType
    count: int = 0
    total_duration_ms: float = 0.0


@dataclass
class LineageGraph:
    nodes: List[Node]
    edges: List[Edge]
    view_mode: ViewMode
    cycles: List[List[str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
            "cycles": [list(cycle) for cycle in self.cycles],
            "meta": {"view_mode": self.view_mode.value},
        }


@dataclass
class BuildStats:
    source_entries: int = 0
    consumed_entries: int = 0
    skipped_entries: int = 0
    coverage_pct: float = 0.0
    skipped_by_reason: Dict[SkipReason, int] = field(
        default_factory=lambda: {reason: 0 for reason in SkipReason}
    )
    total_execution_ms: float = 0.0
    avg_execution_ms: float = 0.0
    query_nodes: int = 0
    table_nodes: int = 0
    column_nodes: int = 0
    edge_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sourceEntries": self.source_entries,
            "consumedEntries": self.consumed_entries,
            "skippedEntries": self.skipped_entries,
            "coveragePct": self.coverage_pct,
            "skippedByReason": {reason.value: count for reason, count in self.skipped_by_reason.items()},
            "totalExecutionMs": self.total_execution_ms,
            "avgExecutionMs": self.avg_execution_ms,
            "queryNodes": self.query_nodes,
            "tableNodes": self.table_nodes,
            "columnNodes": self.column_nodes,
            "edgeCount": self.edge_count,
        }


@dataclass
class LineageBuildResult:
    graph: LineageGraph
    stats: BuildStats

    def to_dict(self) -> Dict[str, Any]:
        return {"graphData": self.graph.to_dict(), "stats": self.stats.to_dict()}


class _GraphAccumulator:
    """Nodes, edges and counters owned by a single build call."""

    def __init__(self, options: BuildOptions) -> None:
        self.options = options
        self.nodes: Dict[str, Node] = {}
        self.edges: Dict[Tuple[str, str, EdgeType], Edge] = {}
        self.queries: Dict[Tuple[str, QueryType], QueryAggregate] = {}
        self.skipped: Dict[SkipReason, int] = {reason: 0 for reason in SkipReason}
        self.consumed_entries = 0
        self.consumed_duration_ms = 0.0

    def skip(self, reason: SkipReason) -> None:
        self.skipped[reason] += 1

    def add_node(self, node_id: str, name: str, schema: Optional[str], node_type: NodeType, **extra: Any) -> str:
        if node_id not in self.nodes:
            self.nodes[node_id] = Node(node_id, name, schema, node_type, dict(extra))
        return node_id

    def add_edge(self, source: str, target: str, edge_type: EdgeType, duration_ms: float) -> None:
        key = (source, target, edge_type)
        edge = self.edges.get(key)
        if edge is None:
            edge = self.edges[key] = Edge(source, target, edge_type)
        edge.execution_count += 1
        edge.total_duration_ms += max(0.0, duration_ms)

    def add_table_node(self, table_id: str) -> str:
        ref = table_ref_from_id(table_id)
        return self.add_node(f"table:{table_id}", ref.id, ref.schema, NodeType.TABLE)

    def add_column_node(self, ref: ColumnRef) -> str:
        table = table_ref_from_id(ref.table_id)
        return self.add_node(
            f"column:{ref.table_id}.{ref.column}",
            f"{table.id}.{ref.column}",
            table.schema,
            NodeType.COLUMN,
        )

    def consume(self, entry: HistoryEntry, query: str, query_hash: str, analysis: StatementAnalysis) -> None:
        duration = entry.duration_ms
        self.consumed_entries += 1
        self.consumed_duration_ms += duration

        key = (query_hash, analysis.query_type)
        aggregate = self.queries.get(key)
        if aggregate is None:
            aggregate = self.queries[key] = QueryAggregate(
                id=f"query:{query_hash}:{analysis.query_type.value}",
                query=query,
                query_type=analysis.query_type,
            )
        aggregate.count += 1
        aggregate.total_duration_ms += duration

        write_edge = _EDGE_TYPE_BY_QUERY.get(analysis.query_type, EdgeType.UNKNOWN)
        if self.options.view_mode is ViewMode.TABLE_ONLY:
            self._add_table_only(analysis, write_edge, duration)
            return

        for table_id in analysis.write_targets:
            self.add_edge(aggregate.id, self.add_table_node(table_id), write_edge, duration)
        for table_id in analysis.tables:
            table_node = self.add_table_node(table_id)
            if analysis.query_type is QueryType.SELECT or table_id not in analysis.write_targets:
                self.add_edge(aggregate.id, table_node, EdgeType.SELECT, duration)

        if self.options.view_mode is ViewMode.TABLE_QUERY:
            return

        for ref in analysis.read_columns:
            self.add_edge(aggregate.id, self.add_column_node(ref), EdgeType.SELECT, duration)
        for ref in analysis.write_columns:
            self.add_edge(aggregate.id, self.add_column_node(ref), write_edge, duration)

    def _add_table_only(self, analysis: StatementAnalysis, write_edge: EdgeType, duration: float) -> None:
        for table_id in analysis.tables:
            self.add_table_node(table_id)
        read_tables = analysis.read_tables

        if analysis.write_targets and read_tables:
            for read_id in read_tables:
                for write_id in analysis.write_targets:
                    if read_id != write_id:
                        self.add_edge(f"table:{read_id}", f"table:{write_id}", write_edge, duration)
        elif analysis.query_type is QueryType.SELECT and len(analysis.tables) > 1:
            tables = sorted(analysis.tables)
            for i, left in enumerate(tables):
                for right in tables[i + 1:]:
                    self.add_edge(f"table:{left}", f"table:{right}", EdgeType.SELECT, duration)

    def finalize(self, source_entries: int) -> LineageBuildResult:
        if self.options.view_mode is not ViewMode.TABLE_ONLY:
            for aggregate in self.queries.values():
                suffix = f" x{aggregate.count}" if aggregate.count > 1 else ""
                self.add_node(
                    aggregate.id,
                    f"{aggregate.query_type.value} {summarize_query(aggregate.query)}{suffix}",
                    None,
                    NodeType.QUERY,
                    sample_query=aggregate.query,
                    execution_count=aggregate.count,
                    total_duration_ms=_round(aggregate.total_duration_ms),
                    avg_duration_ms=_round(aggregate.total_duration_ms / max(1, aggregate.count)),
                )

        edges: List[Edge] = []
        for edge in self.edges.values():
            total = _round(edge.total_duration_ms)
            edges.append(Edge(
                edge.source,
                edge.target,
                edge.edge_type,
                edge.execution_count,
                total,
                _round(total / max(1, edge.execution_count)),
            ))

        nodes = list(self.nodes.values())
        consumed = self.consumed_entries
        stats = BuildStats(
            source_entries=source_entries,
            consumed_entries=consumed,
            skipped_entries=sum(self.skipped.values()),
            coverage_pct=_round(consumed / source_entries * 100, 1) if source_entries else 0.0,
            skipped_by_reason=dict(self.skipped),
            total_execution_ms=_round(self.consumed_duration_ms),
            avg_execution_ms=_round(self.consumed_duration_ms / consumed) if consumed else 0.0,
            query_nodes=sum(1 for node in nodes if node.node_type is NodeType.QUERY),
            table_nodes=sum(1 for node in nodes if node.node_type is NodeType.TABLE),
            column_nodes=sum(1 for node in nodes if node.node_type is NodeType.COLUMN),
            edge_count=len(edges),
        )
        graph = LineageGraph(nodes=nodes, edges=edges, view_mode=self.options.view_mode)
        return LineageBuildResult(graph=graph, stats=stats)


def _coerce_entries(history_entries: Any) -> List[HistoryEntry]:
    if history_entries is None:
        return []
    if isinstance(history_entries, (str, bytes, collections.abc.Mapping)) or not isinstance(
        history_entries, collections.abc.Iterable
    ):
        raise TypeError(
            f"history entries must be a sequence, got {type(history_entries).__name__}"
        )
    return [HistoryEntry.coerce(raw) for raw in history_entries]


def _fold_entry(acc: _GraphAccumulator, index: int, entry: HistoryEntry) -> None:
    options = acc.options
    query = entry.sql.strip()
    if not query:
        acc.skip(SkipReason.EMPTY_QUERY)
        return
    if has_multiple_statements(query):
        logger.debug(f"Entry {index}: multiple statements, skipped")
        acc.skip(SkipReason.MULTI_STATEMENT)
        return

    stripped = strip_comments(query)
    query_type = detect_query_type(stripped)
    if query_type not in SUPPORTED_QUERY_TYPES:
        acc.skip(SkipReason.UNSUPPORTED_TYPE)
        return
    if options.query_type_filter != "ALL" and query_type.value != options.query_type_filter:
        acc.skip(SkipReason.FILTERED_OUT)
        return

    try:
        analysis = analyze_statement(
            stripped,
            query_type,
            options.default_schema,
            include_columns=options.view_mode is ViewMode.FULL,
        )
        query_hash = entry.query_hash or content_hash(query)
    except Exception as exc:
        logger.debug(f"Entry {index}: analysis failed: {exc}", exc_info=True)
        acc.skip(SkipReason.PARSE_ERROR)
        return

    if not analysis.tables:
        acc.skip(SkipReason.NO_TABLE_REFERENCE)
        return

    tokens = options.table_filter_tokens()
    if tokens and not any(token in table_id for table_id in analysis.tables for token in tokens):
        acc.skip(SkipReason.FILTERED_OUT)
        return

    acc.consume(entry, query, query_hash, analysis)


def build_lineage_graph(
    history_entries: Optional[Iterable[Any]],
    options: Optional[Any] = None,
) -> LineageBuildResult:
    """Fold a history of executed statements into one lineage graph.

    ``options`` may be a :class:`BuildOptions` or a mapping with camelCase
    or snake_case keys. Malformed statements are counted as skipped and
    never raise; only an input that is not a sequence does.
    """
    opts = BuildOptions.from_mapping(options)
    entries = _coerce_entries(history_entries)
    acc = _GraphAccumulator(opts)

    for index, entry in enumerate(entries):
        _fold_entry(acc, index, entry)

    result = acc.finalize(len(entries))
    logger.info(
        f"Lineage build consumed {result.stats.consumed_entries}/{result.stats.source_entries} "
        f"entries ({result.stats.coverage_pct}%), {len(result.graph.nodes)} nodes, "
        f"{len(result.graph.edges)} edges"
    )
    return result
