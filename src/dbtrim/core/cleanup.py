"""
Best-effort removal of everything an export leaves behind.

Shadow names are derived again from the registry and the tenant list, so
tables created before a crash are found without any bookkeeping. No failure
here is raised: each one is logged and the next item is tried.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field

from dbtrim.adapters.base import DatabaseAdapter
from dbtrim.constants import DEFAULT_TENANT_ID
from dbtrim.core.assembly import ArtifactStore
from dbtrim.core.naming import TableNames
from dbtrim.core.registry import TableRegistry
from dbtrim.logging import get_logger
from dbtrim.models import ExportPlan

logger = get_logger(__name__)


@dataclass
class CleanupReport:
    dropped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    files_removed: int = 0

    @property
    def clean(self) -> bool:
        return not self.failed


def derive_shadow_names(
    registry: TableRegistry,
    base_prefix: str,
    tenant_ids: Iterable[int],
    plan: ExportPlan | None = None,
) -> list[str]:
    """Every shadow name an export with this registry may have created."""
    names: list[str] = []
    seen: set[str] = set()

    def add(name: str) -> None:
        if name not in seen:
            seen.add(name)
            names.append(name)

    tenants = sorted(set(tenant_ids) | {DEFAULT_TENANT_ID}, reverse=True)
    for tenant_id in tenants:
        resolver = TableNames(base_prefix, tenant_id, registry.global_tables)
        for logical in registry.subset_tables():
            add(resolver.shadow(logical))

    if plan is not None:
        for item in plan.work_items:
            add(item.shadow)

    return names


def cleanup(
    adapter: DatabaseAdapter | None,
    registry: TableRegistry | None,
    base_prefix: str,
    tenant_ids: Iterable[int] = (),
    plan: ExportPlan | None = None,
    store: ArtifactStore | None = None,
) -> CleanupReport:
    report = CleanupReport()

    if adapter is not None and registry is not None:
        for shadow in derive_shadow_names(registry, base_prefix, tenant_ids, plan):
            try:
                adapter.drop_table(shadow)
                report.dropped.append(shadow)
            except Exception as e:
                report.failed.append(shadow)
                logger.warning("Could not drop shadow table", table=shadow, error=str(e))

    if store is not None:
        try:
            report.files_removed = store.discard_all()
        except Exception as e:
            logger.warning("Could not remove temporary files", path=str(store.root), error=str(e))

    logger.debug(
        "Cleanup finished",
        dropped=len(report.dropped),
        failed=len(report.failed),
        files_removed=report.files_removed,
    )
    return report
