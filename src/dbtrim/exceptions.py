from dataclasses import dataclass

__all__ = [
    "DbtrimError",
    "ConnectionError",
    "UnsupportedDatabaseError",
    "InvalidURLError",
    "ConfigError",
    "RegistrationConflict",
    "RegistrationError",
    "DependencyOrderError",
    "QueryExecutionError",
    "PipelineError",
    "SchemaProbeFailure",
    "SubsetQueryFailure",
    "ArtifactIOFailure",
    "TenantSwitchFailure",
]


class DbtrimError(Exception):
    """Base exception for all dbtrim errors."""

    pass


class ConnectionError(DbtrimError):
    """Failed to connect to database."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        masked_url = self._mask_password(url)
        super().__init__(f"Cannot connect to {masked_url}: {reason}")

    @staticmethod
    def _mask_password(url: str) -> str:
        """Mask password in database URL for safe display."""
        import re

        # Match password in URL: ://user:password@host
        return re.sub(r"(://[^:]+:)(.+)(@[^@]+)$", r"\1****\3", url)


class UnsupportedDatabaseError(DbtrimError):
    """Database type is not supported."""

    def __init__(self, db_type: str):
        self.db_type = db_type
        super().__init__(
            f"Unsupported database type: '{db_type}'. Supported types: postgresql, sqlite"
        )


class InvalidURLError(DbtrimError):
    """Database URL is malformed."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Invalid database URL: {reason}")


class ConfigError(DbtrimError):
    """Export options are inconsistent or reference unknown extensions."""

    pass


@dataclass(frozen=True)
class RegistrationConflict:
    """
    Record of a table registered more than once.

    Conflicts are not errors: the later registration replaces the policy and
    the record is kept so the overwrite can be reported.
    """

    table: str
    previous: str
    replacement: str
    source: str

    def describe(self) -> str:
        return (
            f"Table '{self.table}' re-registered by {self.source}: "
            f"{self.previous} -> {self.replacement}"
        )


class RegistrationError(DbtrimError):
    """An extension failed while contributing table policies."""

    def __init__(self, extension: str, reason: str):
        self.extension = extension
        self.reason = reason
        super().__init__(f"Extension '{extension}' failed to register: {reason}")


class DependencyOrderError(DbtrimError):
    """A subset rule depends on a table that is not processed before it."""

    def __init__(self, table: str, dependency: str, reason: str):
        self.table = table
        self.dependency = dependency
        self.reason = reason
        super().__init__(f"Table '{table}' cannot depend on '{dependency}': {reason}")


class QueryExecutionError(DbtrimError):
    """A statement sent through an adapter failed."""

    def __init__(self, sql: str, reason: str):
        self.sql = sql
        self.reason = reason
        preview = sql if len(sql) <= 200 else sql[:200] + "..."
        super().__init__(f"Query failed: {reason} [{preview}]")


class PipelineError(DbtrimError):
    """
    Failure inside the export pipeline.

    Carries the stage that failed together with the table and tenant being
    processed so the operator can see exactly where the run stopped.
    """

    default_stage = "export"

    def __init__(
        self,
        reason: str,
        table: str | None = None,
        tenant_id: int | None = None,
        stage: str | None = None,
    ):
        self.reason = reason
        self.table = table
        self.tenant_id = tenant_id
        self.stage = stage or self.default_stage
        super().__init__(self._format())

    def _format(self) -> str:
        parts = [f"stage={self.stage}"]
        if self.table:
            parts.append(f"table={self.table}")
        if self.tenant_id is not None:
            parts.append(f"tenant={self.tenant_id}")
        return f"{self.reason} ({', '.join(parts)})"

    def with_context(
        self, table: str | None = None, tenant_id: int | None = None
    ) -> "PipelineError":
        """Fill in table/tenant context that was unknown where the error was raised."""
        if self.table is None and table is not None:
            self.table = table
        if self.tenant_id is None and tenant_id is not None:
            self.tenant_id = tenant_id
        self.args = (self._format(),)
        return self


class SchemaProbeFailure(PipelineError):
    """Column or key introspection failed; the table is copied verbatim instead."""

    default_stage = "schema-probe"


class SubsetQueryFailure(PipelineError):
    """A subset statement failed; the export is aborted."""

    default_stage = "subset"


class ArtifactIOFailure(PipelineError):
    """Writing, reading or deleting an export artifact failed."""

    default_stage = "artifact"


class TenantSwitchFailure(PipelineError):
    """The adapter could not switch to a tenant's context."""

    default_stage = "tenant-switch"
