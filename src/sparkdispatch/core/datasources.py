"""Data source lookup and authorization.

A data source names an external catalog (for example an S3/Glue catalog)
together with the result index its queries write to and the roles that
may query it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping, Protocol


class DataSourceNotFoundError(LookupError):
    """Raised when a data source name cannot be resolved."""


class AuthorizationError(PermissionError):
    """Raised when the current user may not query a data source."""


@dataclass(frozen=True)
class DataSourceMetadata:
    """
    Lightweight description of a configured data source.

    Attributes:
        name: Data source name used in queries (`<name>.<schema>.<table>`).
        connector: Connector type, e.g. `S3GLUE`.
        properties: Connector properties (role ARNs, index store URIs, ...).
        allowed_roles: Backend roles permitted to query this data source.
        result_index: Result-store location, or None for the default index.
    """

    name: str
    connector: str = "S3GLUE"
    properties: Mapping[str, str] = field(default_factory=dict)
    allowed_roles: tuple[str, ...] = ()
    result_index: str | None = None


class DataSourceService(Protocol):
    """Interface for resolving data source names to their metadata."""

    def get_raw_data_source_metadata(self, name: str) -> DataSourceMetadata:
        """Return metadata for `name` or raise DataSourceNotFoundError."""
        ...


def _parse_data_source(item: Mapping[str, object]) -> DataSourceMetadata:
    """Build DataSourceMetadata from one JSON object."""
    name = item.get("name")
    if not isinstance(name, str) or not name:
        raise ValueError("Data source entry is missing a `name`.")
    properties = item.get("properties") or {}
    if not isinstance(properties, Mapping):
        raise ValueError(f"Data source '{name}' has invalid `properties`.")
    roles = item.get("allowedRoles") or item.get("allowed_roles") or []
    result_index = item.get("resultIndex") or item.get("result_index")
    return DataSourceMetadata(
        name=name,
        connector=str(item.get("connector") or "S3GLUE"),
        properties={str(k): str(v) for k, v in properties.items()},
        allowed_roles=tuple(str(r) for r in roles),
        result_index=str(result_index) if result_index else None,
    )


class JsonDataSourceCatalog:
    """Data source service backed by a JSON file (a list of data source objects)."""

    def __init__(self, data_sources: Iterable[DataSourceMetadata]):
        self._by_name = {ds.name: ds for ds in data_sources}

    @classmethod
    def from_file(cls, path: Path) -> "JsonDataSourceCatalog":
        """Load the catalog from a JSON file."""
        try:
            payload = json.loads(path.read_text())
        except OSError as exc:
            raise ValueError(f"Cannot read data sources file '{path}': {exc}") from exc
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON in data sources file '{path}': {exc}") from exc
        if not isinstance(payload, list):
            raise ValueError("Data sources file must contain a JSON list.")
        return cls(_parse_data_source(item) for item in payload)

    def names(self) -> list[str]:
        """Return all configured data source names."""
        return sorted(self._by_name)

    def get_raw_data_source_metadata(self, name: str) -> DataSourceMetadata:
        """Return metadata for a data source name."""
        try:
            return self._by_name[name]
        except KeyError:
            raise DataSourceNotFoundError(f"Data source '{name}' does not exist.") from None


class DataSourceAuthorizer:
    """
    Check that the current user may query a data source.

    Admins may query everything. Other users need at least one backend
    role in common with the data source's allowed roles.
    """

    def __init__(self, user_roles: Iterable[str] = (), *, is_admin: bool = False):
        self.user_roles = frozenset(user_roles)
        self.is_admin = is_admin

    def authorize_data_source(self, metadata: DataSourceMetadata) -> None:
        """Raise AuthorizationError if the user may not query `metadata`."""
        if self.is_admin:
            return
        if self.user_roles & set(metadata.allowed_roles):
            return
        raise AuthorizationError(
            f"User is not authorized to access datasource {metadata.name}. "
            "User should be mapped to any of the roles in "
            f"{list(metadata.allowed_roles)} for access."
        )
