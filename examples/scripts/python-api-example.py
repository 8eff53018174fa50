#!/usr/bin/env python3
"""Example: Using dbtrim as a Python library.

This script exports a reduced copy of a WordPress database, adding a
custom extension for the tables of an in-house events plugin.

Usage:
    DATABASE_URL=postgres://localhost/wordpress python python-api-example.py
    DATABASE_URL=sqlite:///./site.db OUTPUT=- python python-api-example.py > site.sql
"""

import os
import sys

from dbtrim.config import ExportConfig
from dbtrim.core.exporter import export_database
from dbtrim.core.registry import Extension, Registrar
from dbtrim.extensions import load_extensions


class Events(Extension):
    """Keep the 100 most recent events, their meta rows and their attendee log."""

    name = "events"
    description = "Recent events of the in-house events plugin"

    def setup(self, registrar: Registrar) -> None:
        registrar.subset("events", self.recent_events, priority=60)
        registrar.subset(
            "eventmeta",
            lambda ctx: ctx.dependent_subset("events", "event_id", "id"),
            priority=61,
            depends_on=("events",),
        )
        # Attendee data is personal: keep the table definition only
        registrar.exclude("event_attendees")

    def recent_events(self, ctx) -> None:
        ctx.copy_where(
            f"t.id IN (SELECT e.id FROM {ctx.table_sql()} e "
            f"ORDER BY e.starts_at DESC LIMIT 100)"
        )


def main():
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        print("Error: DATABASE_URL environment variable is required", file=sys.stderr)
        print("", file=sys.stderr)
        print("Example:", file=sys.stderr)
        print(
            "  DATABASE_URL=postgres://localhost/wordpress python python-api-example.py",
            file=sys.stderr,
        )
        return

    # Built-in WordPress rules plus the plugin's own tables
    extensions = [*load_extensions(), Events()]
    options = ExportConfig(
        database_url=database_url,
        table_prefix=os.environ.get("TABLE_PREFIX", "wp_"),
        exclude_tables=["*_sessions_log"],
    )

    result = export_database(os.environ.get("OUTPUT"), options, extensions=extensions)

    print(
        f"Exported {result.stats.rows} rows from {result.stats.tables_subset} subset tables "
        f"to {result.output} ({result.size_bytes} bytes)",
        file=sys.stderr,
    )


if __name__ == "__main__":
    main()
