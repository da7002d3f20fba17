"""Application context management for the CLI."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Iterable

from sparkdispatch.cli.common.exits import BACKEND_ERROR_EXIT, CLIENT_ERROR_EXIT, die
from sparkdispatch.core.adapters.emrserverless import EmrServerlessJobClient
from sparkdispatch.core.adapters.opensearch import (
    FlintIndexMetadataReader,
    OpenSearchIndexStore,
    OpenSearchResultReader,
    OpenSearchStateStore,
)
from sparkdispatch.core.auth import AuthError, get_emr_client, get_search_client
from sparkdispatch.core.config import DispatcherSettings
from sparkdispatch.core.datasources import DataSourceAuthorizer, JsonDataSourceCatalog
from sparkdispatch.core.dispatcher import QueryDispatcher
from sparkdispatch.core.indices import FlintQueryClassifier
from sparkdispatch.core.logging import setup_logging
from sparkdispatch.core.session import SessionManager


@dataclass
class DispatchAppContext:
    """Application context holding the dispatcher and the session manager."""

    profile: str | None
    settings: DispatcherSettings
    dispatcher: QueryDispatcher
    session_manager: SessionManager


def build_dispatch_context(
    profile: str | None,
    *,
    region: str | None = None,
    user_roles: Iterable[str] = (),
    is_admin: bool = False,
    sessions_enabled: bool | None = None,
) -> DispatchAppContext:
    """Build the dispatcher and its collaborators from settings and CLI options.

    Args:
        profile: Optional AWS profile name to use for authentication.
        region: Optional region overriding the configured one.
        user_roles: Backend roles of the current user.
        is_admin: Bypass data source role checks.
        sessions_enabled: Optional override of the configured session mode.

    Returns:
        DispatchAppContext: Context with a ready-to-use dispatcher.
    """
    settings = DispatcherSettings.from_env()
    if sessions_enabled is not None:
        settings = replace(settings, sessions_enabled=sessions_enabled)
    setup_logging(settings.log_level, settings.log_format)

    if settings.datasources_file is None:
        die(
            "No data sources configured. Set SPARKDISPATCH_DATASOURCES_FILE.",
            code=CLIENT_ERROR_EXIT,
        )
    try:
        data_sources = JsonDataSourceCatalog.from_file(settings.datasources_file)
    except ValueError as exc:
        die(str(exc), code=CLIENT_ERROR_EXIT)

    try:
        emr = get_emr_client(profile, region or settings.region)
        search = get_search_client(settings.opensearch_host)
    except AuthError as exc:
        die(str(exc), code=BACKEND_ERROR_EXIT)

    job_client = EmrServerlessJobClient(emr, entry_point=settings.entry_point)
    session_manager = SessionManager(job_client, OpenSearchStateStore(search))

    dispatcher = QueryDispatcher(
        job_client=job_client,
        data_sources=data_sources,
        authorizer=DataSourceAuthorizer(user_roles, is_admin=is_admin),
        result_reader=OpenSearchResultReader(search, settings.default_result_index),
        index_metadata_reader=FlintIndexMetadataReader(search),
        index_store=OpenSearchIndexStore(search),
        session_manager=session_manager,
        classifier=FlintQueryClassifier(),
        settings=settings,
    )
    return DispatchAppContext(
        profile=profile,
        settings=settings,
        dispatcher=dispatcher,
        session_manager=session_manager,
    )
