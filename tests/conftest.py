"""Shared pytest fixtures for dbtrim tests."""

import logging
import sqlite3
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from dbtrim.adapters.sqlite import SQLiteAdapter
from dbtrim.core.naming import shadow_table_name
from dbtrim.core.registry import Extension, Registrar
from dbtrim.exceptions import (
    ArtifactIOFailure,
    QueryExecutionError,
    SchemaProbeFailure,
    TenantSwitchFailure,
)
from dbtrim.logging import ROOT_LOGGER_NAME

WORDPRESS_TABLES = """
CREATE TABLE {p}posts (
    ID INTEGER PRIMARY KEY,
    post_author INTEGER NOT NULL DEFAULT 0,
    post_date TEXT NOT NULL,
    post_title TEXT NOT NULL DEFAULT '',
    post_content TEXT NOT NULL DEFAULT '',
    post_status TEXT NOT NULL DEFAULT 'publish',
    post_type TEXT NOT NULL DEFAULT 'post',
    post_parent INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX {p}posts_type_status_date ON {p}posts (post_type, post_status, post_date);
CREATE TABLE {p}postmeta (
    meta_id INTEGER PRIMARY KEY,
    post_id INTEGER NOT NULL,
    meta_key VARCHAR(255),
    meta_value TEXT
);
CREATE TABLE {p}comments (
    comment_ID INTEGER PRIMARY KEY,
    comment_post_ID INTEGER NOT NULL,
    comment_content TEXT NOT NULL DEFAULT ''
);
CREATE TABLE {p}commentmeta (
    meta_id INTEGER PRIMARY KEY,
    comment_id INTEGER NOT NULL,
    meta_key VARCHAR(255),
    meta_value TEXT
);
CREATE TABLE {p}term_relationships (
    object_id INTEGER NOT NULL,
    term_taxonomy_id INTEGER NOT NULL,
    PRIMARY KEY (object_id, term_taxonomy_id)
);
CREATE TABLE {p}term_taxonomy (
    term_taxonomy_id INTEGER PRIMARY KEY,
    term_id INTEGER NOT NULL,
    taxonomy VARCHAR(32) NOT NULL
);
CREATE TABLE {p}terms (
    term_id INTEGER PRIMARY KEY,
    name VARCHAR(200) NOT NULL
);
CREATE TABLE {p}termmeta (
    meta_id INTEGER PRIMARY KEY,
    term_id INTEGER NOT NULL,
    meta_key VARCHAR(255),
    meta_value TEXT
);
CREATE TABLE {p}options (
    option_id INTEGER PRIMARY KEY,
    option_name VARCHAR(191) NOT NULL,
    option_value TEXT NOT NULL
);
"""

GLOBAL_TABLES = """
CREATE TABLE {p}users (
    ID INTEGER PRIMARY KEY,
    user_login VARCHAR(60) NOT NULL
);
CREATE TABLE {p}usermeta (
    umeta_id INTEGER PRIMARY KEY,
    user_id INTEGER NOT NULL,
    meta_key VARCHAR(255),
    meta_value TEXT
);
"""


def insert_rows(conn: sqlite3.Connection, table: str, rows: list[dict[str, Any]]) -> None:
    for row in rows:
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        conn.execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", tuple(row.values()))


def create_site(conn: sqlite3.Connection, prefix: str, with_globals: bool = False) -> None:
    conn.executescript(WORDPRESS_TABLES.format(p=prefix))
    if with_globals:
        conn.executescript(GLOBAL_TABLES.format(p=prefix))


def post(id_: int, date: str, **fields: Any) -> dict[str, Any]:
    row = {"ID": id_, "post_date": date, "post_title": f"Post {id_}"}
    row.update(fields)
    return row


def populate_main_site(conn: sqlite3.Connection, prefix: str = "wp_") -> None:
    """
    Main site data.

    Posts: 60 published posts (only the newest 50 are kept), a draft page,
    a trashed post, a revision of an old post, attachments with and without
    parent, and a page hierarchy 301 -> 300 -> 299.
    """
    posts = [
        post(i, f"2024-01-01 00:{i:02d}:00", post_author=2 if i == 60 else 1)
        for i in range(1, 61)
    ]
    posts += [
        post(100, "2023-05-01 00:00:00", post_type="page", post_status="draft"),
        post(101, "2023-05-02 00:00:00", post_status="trash"),
        post(102, "2023-05-03 00:00:00", post_type="revision", post_parent=5),
        post(200, "2023-06-01 00:00:00", post_type="attachment", post_status="inherit", post_parent=60),
        post(201, "2023-06-02 00:00:00", post_type="attachment", post_status="inherit", post_parent=1),
        post(202, "2023-06-03 00:00:00", post_type="attachment", post_status="inherit"),
        post(299, "2020-01-01 00:00:00", post_type="revision"),
        post(300, "2020-01-02 00:00:00", post_type="revision", post_parent=299),
        post(301, "2020-01-03 00:00:00", post_type="page", post_parent=300),
    ]
    insert_rows(conn, f"{prefix}posts", posts)
    insert_rows(
        conn,
        f"{prefix}postmeta",
        [
            {"meta_id": 1, "post_id": 60, "meta_key": "views", "meta_value": "10"},
            {"meta_id": 2, "post_id": 1, "meta_key": "views", "meta_value": "1"},
            {"meta_id": 3, "post_id": 101, "meta_key": "views", "meta_value": "0"},
        ],
    )
    insert_rows(
        conn,
        f"{prefix}comments",
        [
            {"comment_ID": 1, "comment_post_ID": 60, "comment_content": "kept"},
            {"comment_ID": 2, "comment_post_ID": 2, "comment_content": "dropped"},
        ],
    )
    insert_rows(
        conn,
        f"{prefix}commentmeta",
        [
            {"meta_id": 1, "comment_id": 1, "meta_key": "rating", "meta_value": "5"},
            {"meta_id": 2, "comment_id": 2, "meta_key": "rating", "meta_value": "1"},
        ],
    )
    insert_rows(
        conn,
        f"{prefix}term_relationships",
        [
            {"object_id": 60, "term_taxonomy_id": 1},
            {"object_id": 7, "term_taxonomy_id": 2},
        ],
    )
    insert_rows(
        conn,
        f"{prefix}term_taxonomy",
        [
            {"term_taxonomy_id": 1, "term_id": 1, "taxonomy": "category"},
            {"term_taxonomy_id": 2, "term_id": 2, "taxonomy": "post_tag"},
        ],
    )
    insert_rows(conn, f"{prefix}terms", [{"term_id": 1, "name": "News"}, {"term_id": 2, "name": "Old"}])
    insert_rows(
        conn,
        f"{prefix}termmeta",
        [
            {"meta_id": 1, "term_id": 1, "meta_key": "color", "meta_value": "red"},
            {"meta_id": 2, "term_id": 2, "meta_key": "color", "meta_value": "blue"},
        ],
    )
    insert_rows(
        conn,
        f"{prefix}options",
        [
            {"option_id": 1, "option_name": "siteurl", "option_value": "https://example.com"},
            {"option_id": 2, "option_name": "_transient_feed", "option_value": "x"},
            {"option_id": 3, "option_name": "_site_transient_update", "option_value": "x"},
            {"option_id": 4, "option_name": "my_transient_setting", "option_value": "kept"},
        ],
    )


def populate_users(conn: sqlite3.Connection, prefix: str = "wp_") -> None:
    """Users: 1 admin, 2 author of post 60, 3 admin of site 2, 4 unrelated."""
    insert_rows(
        conn,
        f"{prefix}users",
        [
            {"ID": 1, "user_login": "admin"},
            {"ID": 2, "user_login": "author"},
            {"ID": 3, "user_login": "site2admin"},
            {"ID": 4, "user_login": "subscriber"},
        ],
    )
    insert_rows(
        conn,
        f"{prefix}usermeta",
        [
            {"umeta_id": 1, "user_id": 1, "meta_key": f"{prefix}capabilities",
             "meta_value": 'a:1:{s:13:"administrator";b:1;}'},
            {"umeta_id": 2, "user_id": 1, "meta_key": "session_tokens", "meta_value": "secret"},
            {"umeta_id": 3, "user_id": 2, "meta_key": f"{prefix}capabilities",
             "meta_value": 'a:1:{s:6:"author";b:1;}'},
            {"umeta_id": 4, "user_id": 3, "meta_key": f"{prefix}2_capabilities",
             "meta_value": 'a:1:{s:13:"administrator";b:1;}'},
            {"umeta_id": 5, "user_id": 4, "meta_key": f"{prefix}capabilities",
             "meta_value": 'a:1:{s:10:"subscriber";b:1;}'},
        ],
    )


def populate_second_site(conn: sqlite3.Connection, prefix: str = "wp_2_") -> None:
    insert_rows(
        conn,
        f"{prefix}posts",
        [
            post(1, "2024-02-01 00:00:00", post_author=4),
            post(2, "2024-02-02 00:00:00", post_status="auto-draft"),
        ],
    )
    insert_rows(
        conn,
        f"{prefix}options",
        [{"option_id": 1, "option_name": "blogname", "option_value": "Second"}],
    )


@pytest.fixture
def wp_database(tmp_path: Path) -> Path:
    """A single-site WordPress database file."""
    path = tmp_path / "wordpress.db"
    conn = sqlite3.connect(path)
    create_site(conn, "wp_", with_globals=True)
    populate_main_site(conn)
    populate_users(conn)
    conn.execute("CREATE TABLE wp_sessions_log (id INTEGER PRIMARY KEY, data TEXT)")
    conn.execute("INSERT INTO wp_sessions_log VALUES (1, 'x')")
    conn.execute("CREATE TABLE schema_migrations (version TEXT PRIMARY KEY)")
    conn.execute("INSERT INTO schema_migrations VALUES ('1')")
    conn.commit()
    conn.close()
    return path


@pytest.fixture
def wp_multisite_database(wp_database: Path) -> Path:
    """The single-site database plus a second site using the ``wp_2_`` prefix."""
    conn = sqlite3.connect(wp_database)
    create_site(conn, "wp_2_")
    populate_second_site(conn)
    conn.commit()
    conn.close()
    return wp_database


@pytest.fixture(autouse=True)
def _reset_dbtrim_logging() -> Iterator[None]:
    """Undo setup_logging() so caplog sees records in every test."""
    yield
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.handlers.clear()
    root.propagate = True
    root.setLevel(logging.NOTSET)


def sqlite_url(path: Path) -> str:
    return f"sqlite:///{path}"


@pytest.fixture
def sqlite_adapter(wp_database: Path) -> Iterator[SQLiteAdapter]:
    adapter = SQLiteAdapter()
    adapter.connect(sqlite_url(wp_database))
    yield adapter
    adapter.close()


@pytest.fixture
def memory_adapter() -> Iterator[SQLiteAdapter]:
    """Adapter over an empty in-memory database."""
    adapter = SQLiteAdapter()
    adapter.attach_connection(sqlite3.connect(":memory:"))
    yield adapter
    adapter.close()


def load_dump(sql: str | bytes) -> sqlite3.Connection:
    """Import an SQLite dump into a fresh in-memory database."""
    if isinstance(sql, bytes):
        sql = sql.decode("utf-8")
    conn = sqlite3.connect(":memory:")
    conn.executescript(sql)
    return conn


def shadow_tables(conn: sqlite3.Connection) -> list[str]:
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name LIKE '\\_dbtrim\\_%' ESCAPE '\\'"
    ).fetchall()
    return [r[0] for r in rows]


def column_values(conn: sqlite3.Connection, table: str, column: str) -> set[Any]:
    return {r[0] for r in conn.execute(f'SELECT "{column}" FROM "{table}"')}


class FailingSQLiteAdapter(SQLiteAdapter):
    """
    SQLite adapter that fails at a chosen stage.

    ``fail_stage`` is one of schema-probe, merge, dump, structure,
    tenant-switch or drop. ``fail_table`` limits the failure to one physical
    table (its shadow counts too). Drops only fail for tables that exist.
    """

    def __init__(self, fail_stage: str | None = None, fail_table: str | None = None):
        super().__init__()
        self.fail_stage = fail_stage
        self.fail_table = fail_table
        self.dropped: list[str] = []
        self.tenant_switches: list[int] = []

    def _should_fail(self, stage: str, table: str | None = None) -> bool:
        if stage != self.fail_stage:
            return False
        if self.fail_table is None or table is None:
            return True
        return table in (self.fail_table, shadow_table_name(self.fail_table))

    def create_shadow_table(self, shadow: str, source: str) -> None:
        if self._should_fail("schema-probe", source):
            raise SchemaProbeFailure("injected probe failure", table=source)
        super().create_shadow_table(shadow, source)

    def merge_insert(self, shadow: str, select_sql: str) -> int:
        if self._should_fail("merge", shadow):
            raise QueryExecutionError(select_sql, "injected query failure")
        return super().merge_insert(shadow, select_sql)

    def dump_structure(self, path: Path, tables: list[str]) -> None:
        if self._should_fail("structure"):
            raise ArtifactIOFailure("injected structure dump failure", stage="dump")
        super().dump_structure(path, tables)

    def dump_table_data(self, table: str, path: Path) -> None:
        if self._should_fail("dump", table):
            raise ArtifactIOFailure("injected dump failure", stage="dump")
        super().dump_table_data(table, path)

    def _apply_tenant_context(self, tenant_id: int) -> None:
        self.tenant_switches.append(tenant_id)
        if self._should_fail("tenant-switch"):
            raise TenantSwitchFailure("injected switch failure", tenant_id=tenant_id)

    def drop_table(self, name: str) -> None:
        if self._should_fail("drop", name) and self.table_exists(name):
            raise QueryExecutionError(f"DROP TABLE {name}", "injected drop failure")
        super().drop_table(name)
        self.dropped.append(name)


class RecordingExtension(Extension):
    """Extension built from a function, for tests."""

    def __init__(self, name: str, setup_fn):
        self.name = name
        self._setup_fn = setup_fn

    def setup(self, registrar: Registrar) -> None:
        self._setup_fn(registrar)


@pytest.fixture
def abc_database(tmp_path: Path) -> Path:
    """
    Three tables: a_items (5 rows, timestamps), b_items referencing a_items,
    c_items whose data must never be exported.
    """
    path = tmp_path / "abc.db"
    conn = sqlite3.connect(path)
    conn.executescript(
        """
        CREATE TABLE app_a (id INTEGER PRIMARY KEY, created_at TEXT NOT NULL, label TEXT);
        CREATE TABLE app_b (id INTEGER PRIMARY KEY, a_id INTEGER NOT NULL, note TEXT);
        CREATE TABLE app_c (id INTEGER PRIMARY KEY, secret TEXT);
        INSERT INTO app_a VALUES
            (1, '2024-01-01', 'one'),
            (2, '2024-01-02', 'two'),
            (3, '2024-01-03', 'three'),
            (4, '2024-01-04', 'four'),
            (5, '2024-01-05', 'five');
        INSERT INTO app_b VALUES
            (10, 1, 'b1'),
            (11, 4, 'b4'),
            (12, 5, 'b5'),
            (13, 5, 'b5-again'),
            (14, 3, 'b3');
        INSERT INTO app_c VALUES (1, 'classified');
        """
    )
    conn.commit()
    conn.close()
    return path


def abc_extension(latest: int = 2) -> Extension:
    def keep_latest_a(ctx):
        ctx.merge_insert(
            f"SELECT t.* FROM {ctx.table_sql()} t ORDER BY t.created_at DESC LIMIT {latest}"
        )

    def keep_b_of_a(ctx):
        ctx.dependent_subset("a", "a_id", "id")

    def setup(registrar: Registrar) -> None:
        registrar.subset("a", keep_latest_a, priority=1)
        registrar.subset("b", keep_b_of_a, priority=2, depends_on=("a",))
        registrar.exclude("c")

    return RecordingExtension("abc", setup)
