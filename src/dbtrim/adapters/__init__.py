from dbtrim.adapters.base import DatabaseAdapter
from dbtrim.adapters.postgresql import PostgreSQLAdapter
from dbtrim.adapters.sqlite import SQLiteAdapter

__all__ = [
    "DatabaseAdapter",
    "PostgreSQLAdapter",
    "SQLiteAdapter",
]
