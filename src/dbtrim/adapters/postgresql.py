import os
import re
import subprocess
from pathlib import Path
from typing import Any

import psycopg2
import psycopg2.extras

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
from dbtrim.utils.connection import DatabaseConfig, parse_database_url

logger = get_logger(__name__)

# Identifiers pg_dump leaves unquoted: lower case, no keywords
_PLAIN_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_$]*$")

# Keywords pg_dump always quotes (reserved, type/function and column-name keywords)
_QUOTED_KEYWORDS = frozenset(
    """
    all analyse analyze and any array as asc asymmetric authorization between
    bigint binary bit boolean both case cast char character check coalesce
    collate collation column concurrently constraint create cross current_catalog
    current_date current_role current_schema current_time current_timestamp
    current_user dec decimal default deferrable desc distinct do else end except
    exists extract false fetch float for foreign freeze from full grant greatest
    group grouping having ilike in initially inner inout int integer intersect
    interval into is isnull join json lateral leading least left like limit
    localtime localtimestamp national natural nchar none normalize not notnull
    null nullif numeric offset on only or order out outer overlaps overlay placing
    position precision primary real references returning right row select
    session_user setof similar smallint some substring symmetric system_user table
    tablesample then time timestamp to trailing treat trim true union unique user
    using values varchar variadic verbose when where window with xmlattributes
    xmlconcat xmlelement xmlexists xmlforest xmlnamespaces xmlparse xmlpi
    xmlroot xmlserialize xmltable
    """.split()
)


def pg_dump_identifier(name: str) -> str:
    """Spell an identifier the way pg_dump writes it."""
    if _PLAIN_IDENTIFIER.match(name) and name not in _QUOTED_KEYWORDS:
        return name
    return '"' + name.replace('"', '""') + '"'


class PostgreSQLAdapter(DatabaseAdapter):
    """PostgreSQL adapter: psycopg2 for statements, pg_dump for artifacts."""

    def __init__(
        self,
        schema: str | None = None,
        pg_dump_path: str = "pg_dump",
    ):
        super().__init__()
        self._conn: Any = None
        self._config: DatabaseConfig | None = None
        self._schema_name = schema or "public"
        self.pg_dump_path = pg_dump_path

    def connect(self, url: str) -> None:
        """Establish PostgreSQL connection."""
        config = parse_database_url(url)

        if config.db_type != DatabaseType.POSTGRESQL:
            raise ConnectionError(url, f"Expected PostgreSQL URL, got {config.db_type.value}")

        logger.debug(
            "Connecting to PostgreSQL",
            host=config.host,
            port=config.port,
            database=config.database,
            user=config.user,
        )

        try:
            self._conn = psycopg2.connect(
                host=config.host,
                port=config.port,
                user=config.user,
                password=config.password,
                dbname=config.database,
                **{k: v for k, v in config.options.items()},
            )
            # Each statement commits on its own
            self._conn.autocommit = True

            if self._schema_name != "public":
                with self._conn.cursor() as cur:
                    cur.execute("SET search_path TO %s, public", (self._schema_name,))
                logger.debug("search_path set", schema=self._schema_name)
        except psycopg2.Error as e:
            logger.error("PostgreSQL connection failed", error=str(e))
            raise ConnectionError(url, str(e))

        self._config = config
        logger.info(
            "PostgreSQL connection established",
            database=config.database,
            schema=self._schema_name,
        )

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.debug("PostgreSQL connection closed")

    @property
    def database_name(self) -> str:
        return self._config.database if self._config else "postgres"

    def list_base_tables(self) -> list[str]:
        sql = """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = %s
              AND table_type = 'BASE TABLE'
            ORDER BY table_name
        """
        try:
            with self._conn.cursor() as cur:
                cur.execute(sql, (self._schema_name,))
                return [row[0] for row in cur.fetchall()]
        except psycopg2.Error as e:
            raise QueryExecutionError(sql, str(e).strip()) from e

    def describe_columns(self, table: str) -> ColumnInfo:
        try:
            with self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(
                    """
                    SELECT column_name, data_type
                    FROM information_schema.columns
                    WHERE table_schema = %s AND table_name = %s
                    ORDER BY ordinal_position
                    """,
                    (self._schema_name, table),
                )
                columns = cur.fetchall()

                cur.execute(
                    """
                    SELECT kcu.column_name
                    FROM information_schema.table_constraints tc
                    JOIN information_schema.key_column_usage kcu
                        ON tc.constraint_name = kcu.constraint_name
                        AND tc.table_schema = kcu.table_schema
                    WHERE tc.constraint_type = 'PRIMARY KEY'
                      AND tc.table_schema = %s
                      AND tc.table_name = %s
                    ORDER BY kcu.ordinal_position
                    """,
                    (self._schema_name, table),
                )
                primary_keys = tuple(row["column_name"] for row in cur.fetchall())
        except psycopg2.Error as e:
            raise SchemaProbeFailure(str(e).strip(), table=table) from e

        if not columns:
            raise SchemaProbeFailure("Table has no columns or does not exist", table=table)

        return ColumnInfo(
            table=table,
            primary_keys=primary_keys,
            text_columns=tuple(
                c["column_name"] for c in columns if is_text_type(c["data_type"])
            ),
            all_columns=tuple(c["column_name"] for c in columns),
        )

    def run_query(self, sql: str) -> int:
        try:
            with self._conn.cursor() as cur:
                cur.execute(sql)
                row_count = cur.rowcount
        except psycopg2.Error as e:
            raise QueryExecutionError(sql, str(e).strip()) from e

        log_query_execution(logger, sql, row_count)
        return max(row_count, 0)

    def fetch_value(self, sql: str) -> Any:
        try:
            with self._conn.cursor() as cur:
                cur.execute(sql)
                row = cur.fetchone()
        except psycopg2.Error as e:
            raise QueryExecutionError(sql, str(e).strip()) from e
        return row[0] if row else None

    def create_shadow_table(self, shadow: str, source: str) -> None:
        q = self.quote_identifier
        try:
            self.run_query(f"CREATE TABLE IF NOT EXISTS {q(shadow)} (LIKE {q(source)} INCLUDING ALL)")
        except QueryExecutionError as e:
            raise SchemaProbeFailure(e.reason, table=source) from e

    def merge_insert(self, shadow: str, select_sql: str) -> int:
        """
        Upsert the selected rows into the shadow.

        Rows are deduplicated on the primary key first, since ON CONFLICT may
        not touch the same row twice in one statement. Tables without a
        primary key only receive rows the shadow does not already contain.
        """
        info = self.describe_columns(shadow)
        q = self.quote_identifier
        columns = ", ".join(q(c) for c in info.all_columns)

        if info.has_primary_key:
            keys = ", ".join(q(c) for c in info.primary_keys)
            updates = [
                f"{q(c)} = EXCLUDED.{q(c)}"
                for c in info.all_columns
                if c not in info.primary_keys
            ]
            on_conflict = f"DO UPDATE SET {', '.join(updates)}" if updates else "DO NOTHING"
            sql = (
                f"INSERT INTO {q(shadow)} ({columns}) OVERRIDING SYSTEM VALUE "
                f"SELECT DISTINCT ON ({keys}) {columns} FROM ({select_sql}) AS merge_src "
                f"ON CONFLICT ({keys}) {on_conflict}"
            )
        else:
            sql = (
                f"INSERT INTO {q(shadow)} ({columns}) OVERRIDING SYSTEM VALUE "
                f"SELECT {columns} FROM ({select_sql}) AS merge_src "
                f"EXCEPT SELECT {columns} FROM {q(shadow)}"
            )

        return self.run_query(sql)

    def drop_table(self, name: str) -> None:
        self.run_query(f"DROP TABLE IF EXISTS {self.quote_identifier(name)}")

    def dump_structure(self, path: Path, tables: list[str]) -> None:
        if not tables:
            _write_empty(path)
            return
        args = ["--schema-only", "--no-owner", "--no-privileges"]
        args.extend(f"--table={self._table_pattern(t)}" for t in tables)
        self._run_pg_dump(args, path)

    def dump_table_data(self, table: str, path: Path) -> None:
        args = [
            "--data-only",
            "--no-owner",
            "--no-privileges",
            f"--table={self._table_pattern(table)}",
        ]
        self._run_pg_dump(args, path, table=table)

    def dump_identifier(self, name: str) -> str:
        return pg_dump_identifier(name)

    def build_pg_dump_command(self, args: list[str], path: Path) -> list[str]:
        return [self.pg_dump_path, *args, f"--file={path}"]

    def _table_pattern(self, table: str) -> str:
        # Double quotes keep case and disable pattern characters in pg_dump's -t
        return f"{self.quote_identifier(self._schema_name)}.{self.quote_identifier(table)}"

    def _run_pg_dump(self, args: list[str], path: Path, table: str | None = None) -> None:
        if self._config is None:
            raise ArtifactIOFailure("Not connected", table=table, stage="dump")

        command = self.build_pg_dump_command(args, path)
        env = {**os.environ, **self._config.dump_environment()}
        logger.debug("Running pg_dump", table=table, args=" ".join(args))

        try:
            result = subprocess.run(command, env=env, capture_output=True, text=True, check=False)
        except OSError as e:
            raise ArtifactIOFailure(
                f"Cannot run {self.pg_dump_path}: {e}", table=table, stage="dump"
            ) from e

        if result.returncode != 0:
            reason = (result.stderr or "").strip() or f"pg_dump exited with {result.returncode}"
            raise ArtifactIOFailure(reason, table=table, stage="dump")


def _write_empty(path: Path) -> None:
    try:
        path.write_bytes(b"")
    except OSError as e:
        raise ArtifactIOFailure(str(e), stage="dump") from e
