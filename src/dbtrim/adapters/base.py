from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from dbtrim.constants import DEFAULT_TENANT_ID
from dbtrim.logging import get_logger
from dbtrim.models import ColumnInfo

logger = get_logger(__name__)


class DatabaseAdapter(ABC):
    """
    Abstract base class for database adapters.

    Each adapter implements database-specific logic for:
    - Connection management
    - Table listing and column probing
    - Shadow table creation and keyed merge-inserts
    - Structure and per-table data dumps

    Statements run in autocommit mode: every statement commits on its own.
    """

    def __init__(self) -> None:
        self._tenant_stack: list[int] = []

    @abstractmethod
    def connect(self, url: str) -> None:
        """
        Establish database connection.

        Raises:
            ConnectionError: If connection fails
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close database connection."""
        pass

    @property
    @abstractmethod
    def database_name(self) -> str:
        """Name of the connected database, used for default output names."""
        pass

    @abstractmethod
    def list_base_tables(self) -> list[str]:
        """Return the names of all base tables (no views), sorted."""
        pass

    @abstractmethod
    def describe_columns(self, table: str) -> ColumnInfo:
        """
        Probe a table's primary key, text and full column lists.

        Raises:
            SchemaProbeFailure: If the table cannot be introspected
        """
        pass

    @abstractmethod
    def run_query(self, sql: str) -> int:
        """
        Execute a statement and return the number of affected rows.

        Raises:
            QueryExecutionError: If the statement fails
        """
        pass

    @abstractmethod
    def fetch_value(self, sql: str) -> Any:
        """Execute a query and return the first column of the first row (or None)."""
        pass

    @abstractmethod
    def create_shadow_table(self, shadow: str, source: str) -> None:
        """
        Create ``shadow`` with the same columns and keys as ``source``.

        Does nothing if the shadow already exists.

        Raises:
            SchemaProbeFailure: If the source definition cannot be read
        """
        pass

    @abstractmethod
    def merge_insert(self, shadow: str, select_sql: str) -> int:
        """
        Insert the rows of ``select_sql`` into ``shadow``, replacing rows with
        the same primary key.

        Repeating the same call leaves the shadow unchanged. Returns the
        driver's affected-row count.
        """
        pass

    @abstractmethod
    def drop_table(self, name: str) -> None:
        """Drop a table if it exists."""
        pass

    @abstractmethod
    def dump_structure(self, path: Path, tables: list[str]) -> None:
        """
        Write schema-only DDL for ``tables`` to ``path``.

        Raises:
            ArtifactIOFailure: If the dump cannot be produced
        """
        pass

    @abstractmethod
    def dump_table_data(self, table: str, path: Path) -> None:
        """
        Write the data of one table to ``path``.

        Raises:
            ArtifactIOFailure: If the dump cannot be produced
        """
        pass

    @abstractmethod
    def dump_identifier(self, name: str) -> str:
        """Return ``name`` exactly as the dump tool spells it in its output."""
        pass

    def count_rows(self, table: str) -> int:
        value = self.fetch_value(f"SELECT COUNT(*) FROM {self.quote_identifier(table)}")
        return int(value or 0)

    # Tenant context

    @property
    def current_tenant(self) -> int:
        return self._tenant_stack[-1] if self._tenant_stack else DEFAULT_TENANT_ID

    def switch_tenant_context(self, tenant_id: int) -> None:
        """
        Make ``tenant_id`` the active tenant.

        Calls nest: each switch must be paired with restore_tenant_context().
        """
        if tenant_id != self.current_tenant:
            self._apply_tenant_context(tenant_id)
        self._tenant_stack.append(tenant_id)
        logger.debug("Switched tenant context", tenant=tenant_id)

    def restore_tenant_context(self) -> None:
        """Return to the tenant that was active before the last switch."""
        if not self._tenant_stack:
            return
        left = self._tenant_stack.pop()
        if left != self.current_tenant:
            self._apply_tenant_context(self.current_tenant)
        logger.debug("Restored tenant context", tenant=self.current_tenant)

    def _apply_tenant_context(self, tenant_id: int) -> None:
        """
        Hook for adapters whose connection state depends on the tenant.

        Table-prefix tenancy needs no connection change, so the default does
        nothing.
        """
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # Helper methods that can be overridden if needed

    def quote_identifier(self, name: str) -> str:
        """
        Quote an identifier (table or column name) for safe SQL.

        Default implementation uses double quotes (SQL standard).
        """
        return '"' + name.replace('"', '""') + '"'

    def quote_literal(self, value: Any) -> str:
        """Render a Python value as an SQL literal."""
        if value is None:
            return "NULL"
        if isinstance(value, bool):
            return "TRUE" if value else "FALSE"
        if isinstance(value, (int, float)):
            return str(value)
        return "'" + str(value).replace("'", "''") + "'"
