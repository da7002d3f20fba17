"""Spark submit parameter construction.

Renders the `--class ... --conf k=v` string handed to the backend as the
job's spark-submit parameters.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from urllib.parse import urlparse

from sparkdispatch.core.datasources import DataSourceMetadata

FLINT_JOB_CLASS_NAME = "org.apache.spark.sql.FlintJob"
FLINT_SESSION_CLASS_NAME = "org.apache.spark.sql.FlintREPL"

FLINT_DELEGATING_CATALOG = "org.opensearch.sql.FlintDelegatingSessionCatalog"
GLUE_HIVE_CATALOG_FACTORY = (
    "com.amazonaws.glue.catalog.metastore.AWSGlueDataCatalogHiveClientFactory"
)

GLUE_ROLE_ARN = "glue.auth.role_arn"
GLUE_INDEX_STORE_URI = "glue.indexstore.opensearch.uri"
GLUE_INDEX_STORE_AUTH = "glue.indexstore.opensearch.auth"

_DEFAULT_CONF = {
    "spark.hadoop.fs.s3.customAWSCredentialsProvider": (
        "com.amazonaws.emr.AssumeRoleAWSCredentialsProvider"
    ),
    "spark.hadoop.aws.catalog.credentials.provider.factory.class": (
        GLUE_HIVE_CATALOG_FACTORY
    ),
    "spark.sql.extensions": "org.opensearch.flint.spark.FlintSparkExtensions",
    "spark.datasource.flint.host": "localhost",
    "spark.datasource.flint.port": "9200",
    "spark.datasource.flint.scheme": "http",
    "spark.datasource.flint.auth": "noauth",
}


@dataclass
class SparkSubmitParameters:
    """
    Builder for spark-submit parameters.

    Builder methods return `self` so calls can be chained:

        SparkSubmitParameters().data_source(ds).structured_streaming(True).render()
    """

    class_name: str = FLINT_JOB_CLASS_NAME
    config: dict[str, str] = field(default_factory=lambda: dict(_DEFAULT_CONF))
    extra: str | None = None

    def with_class_name(self, class_name: str) -> "SparkSubmitParameters":
        """Set the main class of the Spark application."""
        self.class_name = class_name
        return self

    def data_source(self, metadata: DataSourceMetadata) -> "SparkSubmitParameters":
        """Wire catalog, assumed role and Flint index store settings for a data source."""
        self.config[f"spark.sql.catalog.{metadata.name}"] = FLINT_DELEGATING_CATALOG

        role_arn = metadata.properties.get(GLUE_ROLE_ARN)
        if role_arn:
            self.config[
                "spark.emr-serverless.driverEnv.ASSUME_ROLE_CREDENTIALS_ROLE_ARN"
            ] = role_arn
            self.config["spark.executorEnv.ASSUME_ROLE_CREDENTIALS_ROLE_ARN"] = role_arn
            self.config["spark.hive.metastore.glue.role.arn"] = role_arn

        uri = metadata.properties.get(GLUE_INDEX_STORE_URI)
        if uri:
            parsed = urlparse(uri)
            if parsed.hostname:
                self.config["spark.datasource.flint.host"] = parsed.hostname
            if parsed.port:
                self.config["spark.datasource.flint.port"] = str(parsed.port)
            if parsed.scheme:
                self.config["spark.datasource.flint.scheme"] = parsed.scheme

        auth = metadata.properties.get(GLUE_INDEX_STORE_AUTH)
        if auth:
            self.config["spark.datasource.flint.auth"] = auth.lower()
        return self

    def structured_streaming(self, enabled: bool) -> "SparkSubmitParameters":
        """Mark the job as a continuously running streaming job."""
        if enabled:
            self.config["spark.flint.job.type"] = "streaming"
        return self

    def session_id(self, session_id: str) -> "SparkSubmitParameters":
        """Bind the session-serving program to a session id."""
        self.config["spark.flint.job.sessionId"] = session_id
        return self

    def request_index(self, index_name: str) -> "SparkSubmitParameters":
        """Point the session-serving program at the index it polls for statements."""
        self.config["spark.flint.job.requestIndex"] = index_name
        return self

    def extra_parameters(self, params: str | None) -> "SparkSubmitParameters":
        """Append caller supplied spark-submit parameters verbatim."""
        self.extra = params.strip() if params else None
        return self

    def render(self) -> str:
        """Return the spark-submit parameter string."""
        parts = [f"--class {self.class_name}"]
        parts.extend(f"--conf {k}={v}" for k, v in self.config.items())
        if self.extra:
            parts.append(self.extra)
        return " ".join(parts)

    def __str__(self) -> str:
        return self.render()
