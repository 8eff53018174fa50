import re
import sqlite3
from pathlib import Path
from typing import Any

from dbtrim.adapters.base import DatabaseAdapter
from dbtrim.config import DatabaseType
from dbtrim.exceptions import (
    ArtifactIOFailure,
    ConnectionError,
    QueryExecutionError,
    SchemaProbeFailure,
)
from dbtrim.logging import get_logger, log_query_execution
from dbtrim.models import ColumnInfo, is_text_type
from dbtrim.utils.connection import parse_database_url

logger = get_logger(__name__)

# Table name in a stored CREATE TABLE statement: "quoted", [bracketed], `ticked` or bare
_CREATE_TABLE_NAME = re.compile(
    r'^(\s*CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?)'
    r'("(?:[^"]|"")+"|\[[^\]]+\]|`[^`]+`|[^\s(]+)',
    re.IGNORECASE,
)


class SQLiteAdapter(DatabaseAdapter):
    """
    SQLite adapter.

    Dumps are produced in-process: DDL comes from ``sqlite_master`` and rows
    are written as one ``INSERT INTO "table" VALUES(...)`` line each.
    """

    def __init__(self) -> None:
        super().__init__()
        self._conn: sqlite3.Connection | None = None
        self._path = ""

    def connect(self, url: str) -> None:
        config = parse_database_url(url)

        if config.db_type != DatabaseType.SQLITE:
            raise ConnectionError(url, f"Expected SQLite URL, got {config.db_type.value}")

        if config.database != ":memory:" and not Path(config.database).is_file():
            raise ConnectionError(url, f"Database file not found: {config.database}")

        try:
            # isolation_level=None: autocommit, one statement at a time
            self._conn = sqlite3.connect(config.database, isolation_level=None)
        except sqlite3.Error as e:
            raise ConnectionError(url, str(e))

        self._path = config.database
        logger.info("SQLite database opened", database=config.database)

    def attach_connection(self, conn: sqlite3.Connection, name: str = "memory") -> None:
        """Use an already open connection (tests, in-memory databases)."""
        conn.isolation_level = None
        self._conn = conn
        self._path = name

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.debug("SQLite database closed")

    @property
    def database_name(self) -> str:
        return Path(self._path).stem or "sqlite"

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise ConnectionError(f"sqlite:///{self._path}", "Not connected")
        return self._conn

    def list_base_tables(self) -> list[str]:
        rows = self.connection.execute(
            "SELECT name FROM sqlite_master "
            "WHERE type = 'table' AND name NOT LIKE 'sqlite\\_%' ESCAPE '\\' "
            "ORDER BY name"
        ).fetchall()
        return [row[0] for row in rows]

    def describe_columns(self, table: str) -> ColumnInfo:
        try:
            rows = self.connection.execute(
                f"PRAGMA table_info({self.quote_identifier(table)})"
            ).fetchall()
        except sqlite3.Error as e:
            raise SchemaProbeFailure(str(e), table=table) from e

        if not rows:
            raise SchemaProbeFailure("Table has no columns or does not exist", table=table)

        # PRAGMA table_info: (cid, name, type, notnull, dflt_value, pk)
        primary_keys = tuple(r[1] for r in sorted((r for r in rows if r[5]), key=lambda r: r[5]))
        return ColumnInfo(
            table=table,
            primary_keys=primary_keys,
            text_columns=tuple(r[1] for r in rows if is_text_type(r[2] or "")),
            all_columns=tuple(r[1] for r in rows),
        )

    def run_query(self, sql: str) -> int:
        try:
            cursor = self.connection.execute(sql)
        except sqlite3.Error as e:
            raise QueryExecutionError(sql, str(e)) from e

        row_count = cursor.rowcount
        log_query_execution(logger, sql, row_count)
        return max(row_count, 0)

    def fetch_value(self, sql: str) -> Any:
        try:
            row = self.connection.execute(sql).fetchone()
        except sqlite3.Error as e:
            raise QueryExecutionError(sql, str(e)) from e
        return row[0] if row else None

    def table_exists(self, name: str) -> bool:
        row = self.connection.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (name,)
        ).fetchone()
        return row is not None

    def create_shadow_table(self, shadow: str, source: str) -> None:
        if self.table_exists(shadow):
            return

        ddl = self._table_ddl(source)
        if ddl is None:
            raise SchemaProbeFailure("No table definition found", table=source)

        renamed, count = _CREATE_TABLE_NAME.subn(
            lambda m: m.group(1) + self.quote_identifier(shadow), ddl, count=1
        )
        if not count:
            raise SchemaProbeFailure("Unrecognised table definition", table=source)

        try:
            self.run_query(renamed)
        except QueryExecutionError as e:
            raise SchemaProbeFailure(e.reason, table=source) from e

    def merge_insert(self, shadow: str, select_sql: str) -> int:
        info = self.describe_columns(shadow)
        q = self.quote_identifier(shadow)

        if info.has_primary_key:
            return self.run_query(f"INSERT OR REPLACE INTO {q} {select_sql}")

        # Without a key, only add rows that are not there yet
        return self.run_query(
            f"INSERT INTO {q} SELECT * FROM ({select_sql}) EXCEPT SELECT * FROM {q}"
        )

    def drop_table(self, name: str) -> None:
        self.run_query(f"DROP TABLE IF EXISTS {self.quote_identifier(name)}")

    def dump_structure(self, path: Path, tables: list[str]) -> None:
        try:
            with open(path, "w", encoding="utf-8", newline="\n") as out:
                out.write("-- dbtrim SQLite dump: structure\n")
                for table in tables:
                    ddl = self._table_ddl(table)
                    if ddl is None:
                        continue
                    out.write(f"{ddl};\n")
                    extras = self.connection.execute(
                        "SELECT sql FROM sqlite_master "
                        "WHERE tbl_name = ? AND type IN ('index', 'trigger') AND sql IS NOT NULL "
                        "ORDER BY type, name",
                        (table,),
                    ).fetchall()
                    for (sql,) in extras:
                        out.write(f"{sql};\n")
        except (OSError, sqlite3.Error) as e:
            raise ArtifactIOFailure(str(e), stage="dump") from e

    def dump_table_data(self, table: str, path: Path) -> None:
        info = self.describe_columns(table)
        quoted = ", ".join(f"quote({self.quote_identifier(c)})" for c in info.all_columns)
        sql = f"SELECT {quoted} FROM {self.quote_identifier(table)}"
        if info.has_primary_key:
            sql += " ORDER BY " + ", ".join(self.quote_identifier(c) for c in info.primary_keys)

        name = self.dump_identifier(table)
        try:
            with open(path, "w", encoding="utf-8", newline="\n") as out:
                out.write(f"-- Data for table {name}\n")
                for row in self.connection.execute(sql):
                    out.write(f"INSERT INTO {name} VALUES({','.join(row)});\n")
        except (OSError, sqlite3.Error) as e:
            raise ArtifactIOFailure(str(e), table=table, stage="dump") from e

    def dump_identifier(self, name: str) -> str:
        return self.quote_identifier(name)

    def _table_ddl(self, table: str) -> str | None:
        row = self.connection.execute(
            "SELECT sql FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
        ).fetchone()
        return row[0] if row and row[0] else None
