import re
import secrets
from dataclasses import dataclass, field
from datetime import date
from enum import Enum

from dbtrim.constants import (
    DEFAULT_TABLE_PREFIX,
    MAX_CLOSURE_ITERATIONS,
    STDOUT_TARGET,
)

__all__ = ["DatabaseType", "ExportConfig", "TableOverride", "STDOUT_TARGET"]


class DatabaseType(Enum):
    """Supported database types."""

    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    SQLITE = "sqlite"


class TableOverride(Enum):
    """Per-table policy forced from configuration."""

    SKIP = "skip"
    COPY = "copy"


@dataclass
class ExportConfig:
    """Configuration for one export run."""

    database_url: str
    output: str | None = None  # None: generated name, "-": stdout
    table_prefix: str = DEFAULT_TABLE_PREFIX
    include_tables: list[str] = field(default_factory=list)
    exclude_tables: list[str] = field(default_factory=list)
    tenants: list[int] = field(default_factory=list)
    exclude_tenants: list[int] = field(default_factory=list)
    extensions: list[str] | None = None  # None: every built-in extension
    global_tables: list[str] = field(default_factory=list)
    table_overrides: dict[str, TableOverride] = field(default_factory=dict)
    schema: str | None = None  # PostgreSQL schema name (default: public)
    pg_dump_path: str = "pg_dump"
    temp_dir: str | None = None
    max_closure_iterations: int = MAX_CLOSURE_ITERATIONS
    verbose: bool = False
    no_progress: bool = False

    def __post_init__(self) -> None:
        overrides: dict[str, TableOverride] = {}
        for table, value in self.table_overrides.items():
            overrides[table] = value if isinstance(value, TableOverride) else TableOverride(value)
        self.table_overrides = overrides

    def resolve_output(self, database_name: str, today: date | None = None) -> str:
        """
        Return the output target, generating ``<db>-<YYYY-MM-DD>-<hash>.sql``
        when none was given.
        """
        if self.output:
            return self.output
        today = today or date.today()
        base = re.sub(r"[^A-Za-z0-9_.-]+", "_", database_name.rsplit("/", 1)[-1]) or "export"
        if base.endswith((".db", ".sqlite", ".sqlite3")):
            base = base.rsplit(".", 1)[0]
        return f"{base}-{today.isoformat()}-{secrets.token_hex(4)[:7]}.sql"
