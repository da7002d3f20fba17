"""Runtime settings for the dispatcher and the CLI.

All settings come from `SPARKDISPATCH_*` environment variables. Invalid
values fall back to the defaults instead of failing the process.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from sparkdispatch.core.results import DEFAULT_RESULT_INDEX

ENV_PREFIX = "SPARKDISPATCH_"

DEFAULT_ENTRY_POINT = (
    "file:///home/hadoop/.ivy2/jars/"
    "org.opensearch_opensearch-spark-sql-application_2.12-0.1.0-SNAPSHOT.jar"
)
DEFAULT_OPENSEARCH_HOST = "http://localhost:9200"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}
_LOG_FORMATS = {"console", "json"}


def _env_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    """Return a boolean env value, honoring common spellings."""
    raw = env.get(ENV_PREFIX + key, "").strip().lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    return default


def _env_choice(env: Mapping[str, str], key: str, choices: set[str], default: str) -> str:
    raw = env.get(ENV_PREFIX + key, "").strip()
    for choice in choices:
        if raw.lower() == choice.lower():
            return choice
    return default


@dataclass(frozen=True)
class DispatcherSettings:
    """
    Settings injected into the dispatcher and the CLI context.

    Attributes:
        sessions_enabled: Route non-index queries into interactive sessions.
        region: AWS region of the EMR Serverless application.
        opensearch_host: Cluster holding results, Flint indexes and session state.
        default_result_index: Result index used when a data source sets none.
        entry_point: Spark application jar started for every job.
        datasources_file: JSON file describing the configured data sources.
        log_level: Minimum log level.
        log_format: `console` or `json`.
    """

    sessions_enabled: bool = False
    region: str | None = None
    opensearch_host: str = DEFAULT_OPENSEARCH_HOST
    default_result_index: str = DEFAULT_RESULT_INDEX
    entry_point: str = DEFAULT_ENTRY_POINT
    datasources_file: Path | None = None
    log_level: str = "INFO"
    log_format: str = "console"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "DispatcherSettings":
        """Build settings from environment variables."""
        env = os.environ if environ is None else environ
        datasources_file = env.get(ENV_PREFIX + "DATASOURCES_FILE")
        return cls(
            sessions_enabled=_env_bool(env, "SESSIONS_ENABLED", False),
            region=env.get(ENV_PREFIX + "REGION") or env.get("AWS_REGION") or None,
            opensearch_host=env.get(ENV_PREFIX + "OPENSEARCH_HOST") or DEFAULT_OPENSEARCH_HOST,
            default_result_index=env.get(ENV_PREFIX + "RESULT_INDEX") or DEFAULT_RESULT_INDEX,
            entry_point=env.get(ENV_PREFIX + "ENTRY_POINT") or DEFAULT_ENTRY_POINT,
            datasources_file=Path(datasources_file) if datasources_file else None,
            log_level=_env_choice(env, "LOG_LEVEL", _LOG_LEVELS, "INFO"),
            log_format=_env_choice(env, "LOG_FORMAT", _LOG_FORMATS, "console"),
        )
