"""Index-lifecycle query classification and index metadata contracts.

Flint indexes (skipping indexes, covering indexes and materialized views)
are created, refreshed and dropped through SQL statements. This module
recognises those statements, extracts an IndexOperation from them, and
defines the interfaces used to look up and delete the backing indexes.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Protocol

DEFAULT_SCHEMA = "default"


class QueryClassificationError(ValueError):
    """Raised when an index statement cannot be parsed."""


class IndexNotFoundError(LookupError):
    """Raised when the index backing a Flint index does not exist."""


class IndexOperationKind(str, Enum):
    CREATE = "CREATE"
    REFRESH = "REFRESH"
    DROP = "DROP"


class IndexType(str, Enum):
    SKIPPING = "SKIPPING"
    COVERING = "COVERING"
    MATERIALIZED_VIEW = "MATERIALIZED_VIEW"


@dataclass(frozen=True)
class FullyQualifiedTableName:
    """
    A `datasource.schema.table` name.

    One- and two-part names leave the data source unset (and the schema at
    `default` for one-part names); the dispatcher fills in the request's
    data source.
    """

    table_name: str
    schema_name: str = DEFAULT_SCHEMA
    data_source_name: str | None = None

    @classmethod
    def parse(cls, name: str) -> "FullyQualifiedTableName":
        parts = [p.strip("`") for p in name.strip().split(".")]
        if not all(parts) or len(parts) > 3:
            raise QueryClassificationError(f"Invalid table name: '{name}'")
        if len(parts) == 3:
            return cls(data_source_name=parts[0], schema_name=parts[1], table_name=parts[2])
        if len(parts) == 2:
            return cls(schema_name=parts[0], table_name=parts[1])
        return cls(table_name=parts[0])

    def __str__(self) -> str:
        prefix = f"{self.data_source_name}." if self.data_source_name else ""
        return f"{prefix}{self.schema_name}.{self.table_name}"


@dataclass(frozen=True)
class IndexOperation:
    """
    Parsed description of an index-lifecycle query.

    Attributes:
        kind: CREATE, REFRESH or DROP.
        index_type: Skipping index, covering index or materialized view.
        table: Source table (for materialized views: the view's own name).
        index_name: Covering index name; None for skipping indexes.
        auto_refresh: True if the index is maintained by a streaming job.
    """

    kind: IndexOperationKind
    index_type: IndexType
    table: FullyQualifiedTableName
    index_name: str | None = None
    auto_refresh: bool = False

    @property
    def is_drop(self) -> bool:
        return self.kind == IndexOperationKind.DROP

    def with_data_source(self, data_source: str) -> "IndexOperation":
        """Return a copy whose table carries `data_source` if it had none."""
        if self.table.data_source_name:
            return self
        return replace(self, table=replace(self.table, data_source_name=data_source))

    def flint_index_name(self) -> str:
        """Return the name of the index backing this Flint index."""
        ds = self.table.data_source_name or ""
        base = f"flint_{ds}_{self.table.schema_name}_{self.table.table_name}"
        if self.index_type == IndexType.SKIPPING:
            name = f"{base}_skipping_index"
        elif self.index_type == IndexType.COVERING:
            name = f"{base}_{self.index_name}_index"
        else:
            name = base
        return name.lower()


@dataclass(frozen=True)
class IndexMetadata:
    """Owning streaming job and refresh mode of an existing Flint index."""

    job_id: str | None
    auto_refresh: bool


class QueryClassifier(Protocol):
    """Interface for recognising index-lifecycle queries."""

    def is_index_query(self, query: str) -> bool:
        ...

    def extract(self, query: str) -> IndexOperation:
        ...


class IndexMetadataReader(Protocol):
    """Interface for resolving an index to its owning job."""

    def get_index_metadata(self, operation: IndexOperation) -> IndexMetadata:
        ...


class IndexStore(Protocol):
    """Interface for deleting the index that backs a Flint index."""

    def delete_index(self, index_name: str) -> bool:
        """Delete an index and return whether the deletion was acknowledged."""
        ...


_NAME = r"[`\w.]+"

_PATTERNS: list[tuple[IndexType, re.Pattern]] = [
    (
        IndexType.SKIPPING,
        re.compile(
            rf"^\s*(?P<kind>CREATE|REFRESH|DROP)\s+SKIPPING\s+INDEX\s+"
            rf"(?:IF\s+NOT\s+EXISTS\s+)?ON\s+(?P<table>{_NAME})",
            re.IGNORECASE,
        ),
    ),
    (
        IndexType.COVERING,
        re.compile(
            rf"^\s*(?P<kind>CREATE|REFRESH|DROP)\s+INDEX\s+(?:IF\s+NOT\s+EXISTS\s+)?"
            rf"(?P<index>[`\w]+)\s+ON\s+(?P<table>{_NAME})",
            re.IGNORECASE,
        ),
    ),
    (
        IndexType.MATERIALIZED_VIEW,
        re.compile(
            rf"^\s*(?P<kind>CREATE|REFRESH|DROP)\s+MATERIALIZED\s+VIEW\s+"
            rf"(?:IF\s+NOT\s+EXISTS\s+)?(?P<table>{_NAME})",
            re.IGNORECASE,
        ),
    ),
]

_INDEX_QUERY_RE = re.compile(
    r"^\s*(CREATE|REFRESH|DROP)\s+(SKIPPING\s+INDEX|INDEX|MATERIALIZED\s+VIEW)\b",
    re.IGNORECASE,
)
_WITH_OPTIONS_RE = re.compile(r"\bWITH\s*\((?P<options>[^)]*)\)\s*;?\s*$", re.IGNORECASE)
_AUTO_REFRESH_RE = re.compile(
    r"[`'\"]?auto_refresh[`'\"]?\s*=\s*[`'\"]?(?P<value>\w+)", re.IGNORECASE
)


def _parse_auto_refresh(query: str) -> bool:
    """Return the `auto_refresh` option from a trailing WITH (...) clause."""
    options = _WITH_OPTIONS_RE.search(query)
    if not options:
        return False
    match = _AUTO_REFRESH_RE.search(options.group("options"))
    return bool(match) and match.group("value").lower() == "true"


class FlintQueryClassifier:
    """Regex based classifier for Flint index statements."""

    def is_index_query(self, query: str) -> bool:
        return bool(_INDEX_QUERY_RE.match(query))

    def extract(self, query: str) -> IndexOperation:
        for index_type, pattern in _PATTERNS:
            match = pattern.match(query)
            if not match:
                continue
            kind = IndexOperationKind(match.group("kind").upper())
            index_name = None
            if index_type == IndexType.COVERING:
                index_name = match.group("index").strip("`")
            return IndexOperation(
                kind=kind,
                index_type=index_type,
                table=FullyQualifiedTableName.parse(match.group("table")),
                index_name=index_name,
                auto_refresh=kind == IndexOperationKind.CREATE and _parse_auto_refresh(query),
            )
        raise QueryClassificationError(f"Unsupported index statement: {query.strip()[:80]}")
