"""Shadow table names and tenant-aware table name resolution."""

import hashlib
from dataclasses import dataclass, field

from dbtrim.constants import (
    DEFAULT_TENANT_ID,
    MAX_IDENTIFIER_LENGTH,
    SHADOW_HASH_LENGTH,
    SHADOW_TABLE_PREFIX,
)


def shadow_table_name(physical_name: str) -> str:
    """
    Derive the shadow table name for a physical table.

    The name depends only on ``physical_name``, so cleanup can recompute it
    without any record of what was created. The hash keeps truncated names
    unique.

    Examples:
        >>> shadow_table_name("wp_posts")
        '_dbtrim_wp_posts_d9edbaa6'
    """
    digest = hashlib.sha1(physical_name.encode("utf-8")).hexdigest()[:SHADOW_HASH_LENGTH]
    room = MAX_IDENTIFIER_LENGTH - len(SHADOW_TABLE_PREFIX) - len(digest) - 1
    return f"{SHADOW_TABLE_PREFIX}{physical_name[:room]}_{digest}"


def is_shadow_table(name: str) -> bool:
    return name.startswith(SHADOW_TABLE_PREFIX)


def tenant_prefix(base_prefix: str, tenant_id: int) -> str:
    """Table prefix of a tenant: ``wp_`` for the default tenant, ``wp_3_`` otherwise."""
    if tenant_id == DEFAULT_TENANT_ID or not base_prefix:
        return base_prefix
    return f"{base_prefix}{tenant_id}_"


@dataclass(frozen=True)
class TableNames:
    """
    Resolves logical table names for the active tenant.

    Global tables always live under the base prefix, whatever the tenant.
    """

    base_prefix: str
    tenant_id: int = DEFAULT_TENANT_ID
    global_tables: frozenset[str] = field(default_factory=frozenset)

    @property
    def prefix(self) -> str:
        return tenant_prefix(self.base_prefix, self.tenant_id)

    def physical(self, logical: str) -> str:
        if logical in self.global_tables:
            return f"{self.base_prefix}{logical}"
        return f"{self.prefix}{logical}"

    def shadow(self, logical: str) -> str:
        return shadow_table_name(self.physical(logical))

    def for_tenant(self, tenant_id: int) -> "TableNames":
        return TableNames(self.base_prefix, tenant_id, self.global_tables)
