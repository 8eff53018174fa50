"""
Tenant partitioning.

Physical table names are split into ``<prefix><tenant>_<logical>``. Tables
without a registered policy, or with a COPY policy, are copied verbatim;
subset tables are queued per tenant. Global subset tables are shared by all
tenants and are placed into every tenant's queue.
"""

import re
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from fnmatch import fnmatchcase

from dbtrim.adapters.base import DatabaseAdapter
from dbtrim.constants import DEFAULT_TENANT_ID
from dbtrim.core.naming import is_shadow_table, shadow_table_name
from dbtrim.core.registry import TableRegistry
from dbtrim.exceptions import DbtrimError, PipelineError, TenantSwitchFailure
from dbtrim.logging import get_logger
from dbtrim.models import ExportPlan, PhysicalTable, PolicyKind, TablePolicy, WorkItem

logger = get_logger(__name__)

_TENANT_SEGMENT = re.compile(r"^([0-9]+)_(.+)$")


def classify_table(
    raw_name: str, base_prefix: str, global_tables: Iterable[str] = ()
) -> PhysicalTable:
    """
    Split a physical table name into tenant id and logical name.

    Examples:
        >>> classify_table("wp_posts", "wp_").tenant_id
        1
        >>> classify_table("wp_3_posts", "wp_").logical_name
        'posts'
        >>> classify_table("sessions", "wp_").prefixed
        False
    """
    globals_ = set(global_tables)

    if not base_prefix:
        return PhysicalTable(raw_name, raw_name, DEFAULT_TENANT_ID, raw_name in globals_, True)

    if not raw_name.startswith(base_prefix) or raw_name == base_prefix:
        return PhysicalTable(raw_name, raw_name, DEFAULT_TENANT_ID, False, prefixed=False)

    rest = raw_name[len(base_prefix) :]
    match = _TENANT_SEGMENT.match(rest)
    if match:
        tenant_id, logical = int(match.group(1)), match.group(2)
    else:
        tenant_id, logical = DEFAULT_TENANT_ID, rest

    is_global = tenant_id == DEFAULT_TENANT_ID and logical in globals_
    return PhysicalTable(raw_name, logical, tenant_id, is_global, True)


class TenantPartitioner:
    """Builds the export plan from the list of physical tables."""

    def __init__(
        self,
        registry: TableRegistry,
        base_prefix: str,
        include_tables: Iterable[str] = (),
        exclude_tables: Iterable[str] = (),
        tenants: Iterable[int] = (),
        exclude_tenants: Iterable[int] = (),
    ):
        self.registry = registry
        self.base_prefix = base_prefix
        self.include_tables = list(include_tables)
        self.exclude_tables = list(exclude_tables)
        self.tenants = set(tenants)
        self.exclude_tenants = set(exclude_tenants)

    def accepts_table(self, raw_name: str) -> bool:
        if self.include_tables and not any(
            fnmatchcase(raw_name, p) for p in self.include_tables
        ):
            return False
        return not any(fnmatchcase(raw_name, p) for p in self.exclude_tables)

    def accepts_tenant(self, tenant_id: int) -> bool:
        if self.tenants and tenant_id not in self.tenants:
            return False
        return tenant_id not in self.exclude_tenants

    def partition(self, raw_names: Iterable[str]) -> ExportPlan:
        plan = ExportPlan()
        queues: dict[int, list[WorkItem]] = {}
        global_entries: list[tuple[PhysicalTable, TablePolicy]] = []
        tenants_seen: set[int] = set()

        for raw_name in raw_names:
            if is_shadow_table(raw_name):
                continue

            if not self.accepts_table(raw_name):
                plan.filtered.append(raw_name)
                continue

            table = classify_table(raw_name, self.base_prefix, self.registry.global_tables)
            tenant_table = table.prefixed and not table.is_global
            if tenant_table and not self.accepts_tenant(table.tenant_id):
                plan.filtered.append(raw_name)
                continue

            if tenant_table:
                tenants_seen.add(table.tenant_id)

            # Tables outside the prefix are not managed by any extension
            policy = self.registry.get(table.logical_name) if table.prefixed else None
            if policy is None or policy.kind == PolicyKind.COPY:
                plan.verbatim.append(table)
            elif policy.kind == PolicyKind.EXCLUDED:
                plan.excluded.append(table)
            elif table.is_global:
                global_entries.append((table, policy))
            else:
                queues.setdefault(table.tenant_id, []).append(
                    WorkItem(table, policy, shadow_table_name(raw_name))
                )

        # Every tenant found gets a pass over the global tables
        if global_entries:
            for tenant_id in tenants_seen or {DEFAULT_TENANT_ID}:
                queues.setdefault(tenant_id, [])

        tenant_order = sorted(queues, reverse=True)
        for tenant_id in tenant_order:
            # The shared shadow is dumped after the last tenant has added its rows
            is_last = tenant_id == tenant_order[-1]
            queue = queues[tenant_id] + [
                WorkItem(
                    table,
                    policy,
                    shadow_table_name(table.raw_name),
                    is_global_entry=True,
                    export=is_last,
                )
                for table, policy in global_entries
            ]
            queue.sort(key=lambda item: item.priority)
            plan.queues[tenant_id] = queue

        logger.debug(
            "Tables partitioned",
            verbatim=len(plan.verbatim),
            excluded=len(plan.excluded),
            tenants=len(plan.queues),
            queued=len(plan.work_items),
            filtered=len(plan.filtered),
        )
        return plan


@contextmanager
def tenant_scope(adapter: DatabaseAdapter, tenant_id: int) -> Iterator[None]:
    """
    Run a block with ``tenant_id`` as the adapter's active tenant.

    The previous tenant is restored however the block exits. If the switch
    itself fails, nothing inside the block runs. A failed restore is raised
    only when the block succeeded; otherwise it is logged and the block's
    error propagates.
    """
    try:
        adapter.switch_tenant_context(tenant_id)
    except PipelineError as e:
        raise TenantSwitchFailure(e.reason, tenant_id=tenant_id) from e
    except DbtrimError as e:
        raise TenantSwitchFailure(str(e), tenant_id=tenant_id) from e

    try:
        yield
    except BaseException:
        try:
            adapter.restore_tenant_context()
        except Exception as restore_error:
            logger.error(
                "Failed to restore tenant context",
                tenant=tenant_id,
                error=str(restore_error),
            )
        raise
    adapter.restore_tenant_context()
