"""
Subset materialisation.

A subset handler fills the shadow table of its work item through a
SubsetContext. The context knows the active tenant, resolves logical table
names to physical and shadow names, and wraps the adapter calls handlers
need. Every insert goes through a keyed merge, so running a rule twice adds
nothing.
"""

from collections.abc import Iterable
from typing import Any

from dbtrim.adapters.base import DatabaseAdapter
from dbtrim.constants import MAX_CLOSURE_ITERATIONS
from dbtrim.core.assembly import ArtifactStore
from dbtrim.core.closure import ClosureResult, close_hierarchy
from dbtrim.core.naming import TableNames
from dbtrim.core.registry import TableRegistry
from dbtrim.exceptions import (
    PipelineError,
    QueryExecutionError,
    SchemaProbeFailure,
    SubsetQueryFailure,
)
from dbtrim.logging import get_logger, log_table_exported
from dbtrim.models import (
    ArtifactKind,
    ColumnInfo,
    ExportArtifact,
    PhysicalTable,
    PolicyKind,
    WorkItem,
)

logger = get_logger(__name__)


class SubsetContext:
    """Everything a subset handler needs to fill one shadow table."""

    def __init__(
        self,
        materializer: "Materializer",
        item: WorkItem,
        names: TableNames,
    ):
        self._materializer = materializer
        self.item = item
        self.names = names
        self.adapter: DatabaseAdapter = materializer.adapter
        self.registry: TableRegistry = materializer.registry

    @property
    def tenant_id(self) -> int:
        return self.names.tenant_id

    @property
    def table(self) -> str:
        """Physical name of the table being subset."""
        return self.item.table.raw_name

    @property
    def logical_name(self) -> str:
        return self.item.table.logical_name

    @property
    def shadow(self) -> str:
        return self.item.shadow

    @property
    def prefix(self) -> str:
        """Table prefix of the active tenant."""
        return self.names.prefix

    # Names

    def physical(self, logical: str | None = None) -> str:
        if logical is None or logical == self.logical_name:
            return self.table
        return self.names.physical(logical)

    def shadow_name(self, logical: str | None = None) -> str:
        if logical is None or logical == self.logical_name:
            return self.shadow
        return self.names.shadow(logical)

    def table_sql(self, logical: str | None = None) -> str:
        return self.adapter.quote_identifier(self.physical(logical))

    def shadow_sql(self, logical: str | None = None) -> str:
        return self.adapter.quote_identifier(self.shadow_name(logical))

    def q(self, identifier: str) -> str:
        return self.adapter.quote_identifier(identifier)

    def literal(self, value: Any) -> str:
        return self.adapter.quote_literal(value)

    def literal_list(self, values: Iterable[Any]) -> str:
        rendered = [self.literal(v) for v in values]
        return "(" + ", ".join(rendered) + ")" if rendered else "(NULL)"

    def has_table(self, logical: str) -> bool:
        """Check if the active tenant has a physical table for ``logical``."""
        return self.physical(logical) in self._materializer.available_tables

    # Dependencies

    def require_shadow(self, logical: str) -> bool:
        """
        Check that the shadow of ``logical`` was filled earlier in this run.

        A missing shadow means the dependency is not processed first; a
        warning is logged and the caller should treat the parent as empty.
        """
        if self.shadow_name(logical) in self._materializer.materialized:
            return True
        logger.warning(
            "Dependency not materialised before dependent table",
            table=self.table,
            dependency=self.physical(logical),
            tenant=self.tenant_id,
        )
        return False

    def parent_rows_sql(self, logical: str) -> str | None:
        """
        Table holding the exported rows of ``logical``.

        Subset tables read their shadow; copied and unregistered tables are
        exported whole, so their source table is used. So is a subset table
        that was copied whole after a failed schema probe. Returns None when
        the parent exports no rows.
        """
        policy = self.registry.get(logical)
        if self.physical(logical) in self._materializer.fallback_tables:
            return self.table_sql(logical)
        if policy is not None and policy.kind == PolicyKind.SUBSET:
            return self.shadow_sql(logical) if self.require_shadow(logical) else None
        if policy is not None and policy.kind == PolicyKind.EXCLUDED:
            return None
        return self.table_sql(logical) if self.has_table(logical) else None

    # Schema probe

    def describe(self, logical: str | None = None) -> ColumnInfo:
        table = self.physical(logical)
        try:
            return self.adapter.describe_columns(table)
        except SchemaProbeFailure as e:
            raise e.with_context(table=table, tenant_id=self.tenant_id)

    def key_group(self, alias: str = "t", logical: str | None = None) -> str:
        """
        GROUP BY list made of the table's primary key columns.

        Falls back to every column when the table has no primary key.
        """
        info = self.describe(logical)
        columns = info.primary_keys or info.all_columns
        return ", ".join(f"{alias}.{self.q(c)}" for c in columns)

    # Writes

    def create_shadow(self) -> None:
        self._materializer.ensure_shadow(self.shadow, self.table, self.tenant_id)

    def merge_insert(self, select_sql: str) -> int:
        """Merge the rows of ``select_sql`` into this table's shadow."""
        self.create_shadow()
        try:
            affected = self.adapter.merge_insert(self.shadow, select_sql)
        except QueryExecutionError as e:
            raise SubsetQueryFailure(e.reason, table=self.table, tenant_id=self.tenant_id) from e
        except SchemaProbeFailure as e:
            raise e.with_context(table=self.table, tenant_id=self.tenant_id)
        return affected

    def copy_where(self, where: str = "", alias: str = "t") -> int:
        """Merge the source rows matching ``where`` (a condition on ``alias``)."""
        sql = f"SELECT {alias}.* FROM {self.table_sql()} {alias}"
        if where:
            sql += f" WHERE {where}"
        return self.merge_insert(sql)

    def run(self, sql: str) -> int:
        """Run a statement that adjusts the shadow (for example a DELETE)."""
        try:
            return self.adapter.run_query(sql)
        except QueryExecutionError as e:
            raise SubsetQueryFailure(e.reason, table=self.table, tenant_id=self.tenant_id) from e

    def dependent_subset(self, parent: str, key: str, parent_key: str = "ID") -> int:
        """
        Keep the rows whose ``key`` matches ``parent_key`` of an exported
        ``parent`` row.
        """
        self.create_shadow()
        source = self.parent_rows_sql(parent)
        if source is None:
            return 0
        return self.merge_insert(
            f"SELECT t.* FROM {self.table_sql()} t "
            f"WHERE t.{self.q(key)} IN ("
            f"SELECT p.{self.q(parent_key)} FROM {source} p GROUP BY p.{self.q(parent_key)})"
        )

    def close_hierarchy(self, key: str = "ID", parent: str = "post_parent") -> ClosureResult:
        self.create_shadow()
        try:
            return close_hierarchy(
                self.adapter,
                self.shadow,
                self.table,
                key=key,
                parent=parent,
                max_iterations=self._materializer.max_closure_iterations,
            )
        except PipelineError as e:
            raise e.with_context(tenant_id=self.tenant_id)

    # Hooks

    def do_action(self, name: str, *args: Any) -> None:
        self.registry.do_action(name, self, *args)

    def apply_filters(self, name: str, value: Any, *args: Any) -> Any:
        return self.registry.apply_filters(name, value, self, *args)

    def export(self) -> ExportArtifact | None:
        """
        Dump the shadow table.

        Returns None on passes that only add rows to a shared global shadow;
        the last pass produces the artifact.
        """
        if not self.item.export:
            return None
        return self._materializer.export_shadow(self)


class Materializer:
    """Runs work items and copies verbatim tables, producing data artifacts."""

    def __init__(
        self,
        adapter: DatabaseAdapter,
        registry: TableRegistry,
        store: ArtifactStore,
        available_tables: Iterable[str],
        max_closure_iterations: int = MAX_CLOSURE_ITERATIONS,
    ):
        self.adapter = adapter
        self.registry = registry
        self.store = store
        self.available_tables = frozenset(available_tables)
        self.max_closure_iterations = max_closure_iterations
        self.materialized: set[str] = set()
        self.fallbacks: list[str] = []
        self.fallback_tables: set[str] = set()

    def ensure_shadow(self, shadow: str, source: str, tenant_id: int | None = None) -> None:
        """
        Create ``shadow`` empty on first use in this run.

        A shadow left over from an interrupted run is dropped first so none
        of its rows reach the output.
        """
        if shadow in self.materialized:
            return
        try:
            self.adapter.drop_table(shadow)
        except QueryExecutionError as e:
            raise SubsetQueryFailure(
                e.reason, table=source, tenant_id=tenant_id, stage="shadow"
            ) from e
        try:
            self.adapter.create_shadow_table(shadow, source)
        except SchemaProbeFailure as e:
            raise e.with_context(table=source, tenant_id=tenant_id)
        self.materialized.add(shadow)

    def copy_verbatim(self, table: PhysicalTable, mode: str = "copy") -> ExportArtifact:
        path = self.store.new_path(table.raw_name)
        try:
            self.adapter.dump_table_data(table.raw_name, path)
            rows = self.adapter.count_rows(table.raw_name)
        except PipelineError as e:
            raise e.with_context(table=table.raw_name, tenant_id=table.tenant_id)
        except QueryExecutionError as e:
            raise SubsetQueryFailure(
                e.reason, table=table.raw_name, tenant_id=table.tenant_id, stage="count"
            ) from e

        log_table_exported(logger, table.raw_name, rows, table.tenant_id, mode=mode)
        return ExportArtifact(
            path=path,
            kind=ArtifactKind.DATA,
            table=table.raw_name,
            tenant_id=table.tenant_id,
            rows=rows,
        )

    def materialize(self, item: WorkItem, names: TableNames) -> ExportArtifact | None:
        """
        Run the subset handler of ``item`` and return its data artifact.

        A failed schema probe falls back to copying the table verbatim. On
        non-final passes over a global table nothing is returned.
        """
        handler = self.registry.resolve_handler(item.policy)
        ctx = SubsetContext(self, item, names)
        table = item.table.raw_name

        logger.debug(
            "Materialising subset",
            table=table,
            tenant=names.tenant_id,
            handler=item.policy.handler_id,
            global_entry=item.is_global_entry,
        )

        try:
            artifact = handler(ctx)
            if artifact is None and item.export:
                artifact = ctx.export()
        except SchemaProbeFailure as e:
            e.with_context(table=table, tenant_id=names.tenant_id)
            logger.warning(
                "Schema probe failed, copying table verbatim",
                table=table,
                tenant=names.tenant_id,
                reason=e.reason,
            )
            self.fallback_tables.add(table)
            if not item.export:
                return None
            self.fallbacks.append(table)
            return self.copy_verbatim(item.table, mode="fallback")
        except PipelineError as e:
            raise e.with_context(table=table, tenant_id=names.tenant_id)
        except QueryExecutionError as e:
            raise SubsetQueryFailure(e.reason, table=table, tenant_id=names.tenant_id) from e

        return artifact

    def export_shadow(self, ctx: SubsetContext) -> ExportArtifact:
        ctx.create_shadow()
        ctx.do_action(f"before_dump:{ctx.logical_name}")

        path = self.store.new_path(ctx.table)
        try:
            self.adapter.dump_table_data(ctx.shadow, path)
            rows = self.adapter.count_rows(ctx.shadow)
        except PipelineError as e:
            raise e.with_context(table=ctx.table, tenant_id=ctx.tenant_id)
        except QueryExecutionError as e:
            raise SubsetQueryFailure(
                e.reason, table=ctx.table, tenant_id=ctx.tenant_id, stage="count"
            ) from e

        log_table_exported(logger, ctx.table, rows, ctx.tenant_id, mode="subset")
        return ExportArtifact(
            path=path,
            kind=ArtifactKind.DATA,
            table=ctx.table,
            tenant_id=ctx.tenant_id,
            rewrite_from=self.adapter.dump_identifier(ctx.shadow),
            rewrite_to=self.adapter.dump_identifier(ctx.table),
            rows=rows,
        )
