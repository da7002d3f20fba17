"""Client construction helpers for the job backend and the search cluster.

This module centralizes creation of the boto3 EMR Serverless client and
the OpenSearch client, and applies small but important normalization
rules (such as sanitizing the host URL) to avoid subtle client issues.
"""

from __future__ import annotations

import boto3
from botocore.exceptions import BotoCoreError, NoRegionError, ProfileNotFound
from opensearchpy import OpenSearch


class AuthError(RuntimeError):
    """Raised when a backend client cannot be configured."""


def _format_auth_error(message: str, profile: str | None) -> str:
    """Return a user-friendly auth error message."""
    if profile:
        return (
            f"AWS authentication failed for profile '{profile}': {message}\n"
            f"Re-authenticate with:\n  $ aws sso login --profile {profile}"
        )
    return f"AWS authentication failed: {message}"


def _sanitize_host(host: str | None) -> str | None:
    """
    Normalize a cluster host URL.

    - Removes query strings (e.g. '?o=123456789')
    - Removes trailing slashes
    """
    if not host:
        return host
    host = host.split("?", 1)[0]
    return host.rstrip("/")


def get_emr_client(profile: str | None = None, region: str | None = None):
    """
    Create and return a boto3 EMR Serverless client.

    If a profile is provided, it is resolved from the shared AWS
    configuration (~/.aws/config or environment variables).
    """
    try:
        session = boto3.session.Session(profile_name=profile, region_name=region)
        return session.client("emr-serverless")
    except (ProfileNotFound, NoRegionError, BotoCoreError) as exc:
        raise AuthError(_format_auth_error(str(exc), profile)) from exc


def get_search_client(host: str) -> OpenSearch:
    """Create an OpenSearch client for the cluster holding results and indices."""
    sanitized = _sanitize_host(host)
    if not sanitized:
        raise AuthError("OpenSearch host is not configured.")
    return OpenSearch(hosts=[sanitized])
