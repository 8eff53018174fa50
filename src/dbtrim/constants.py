DEFAULT_TABLE_PREFIX = "wp_"
"""Default base prefix shared by every managed table."""

DEFAULT_TENANT_ID = 1
"""Tenant id assigned to tables without a numeric tenant segment."""

SHADOW_TABLE_PREFIX = "_dbtrim_"
"""Prefix of every shadow table created during an export."""

SHADOW_HASH_LENGTH = 8
"""Number of hex digits of the name hash appended to shadow table names."""

MAX_IDENTIFIER_LENGTH = 63
"""Longest identifier accepted by PostgreSQL; shadow names are truncated to fit."""

DEFAULT_PRIORITY = 10
"""Priority hint used when an extension does not pass one."""

OVERRIDE_PRIORITY = 1000
"""Priority hint of user table overrides so they are applied last."""

MAX_CLOSURE_ITERATIONS = 1000
"""Upper bound on passes of the hierarchy closure loop."""

RECENT_ENTITY_LIMIT = 50
"""Rows kept by the recent-window rules (posts, orders, subscriptions)."""

UNATTACHED_MEDIA_LIMIT = 500
"""Rows kept of attachments that have no parent post."""

DEFAULT_POSTGRESQL_PORT = 5432
"""Default port number for PostgreSQL connections."""

DEFAULT_MYSQL_PORT = 3306
"""Default port number for MySQL connections."""

STDOUT_TARGET = "-"
"""Output target meaning standard output."""
