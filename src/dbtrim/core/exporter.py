import dataclasses
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import BinaryIO

from dbtrim.adapters.base import DatabaseAdapter
from dbtrim.config import DatabaseType, ExportConfig
from dbtrim.core.assembly import ArtifactStore, FileAssembler
from dbtrim.core.cleanup import CleanupReport, cleanup
from dbtrim.core.materializer import Materializer
from dbtrim.core.naming import TableNames
from dbtrim.core.partition import TenantPartitioner, tenant_scope
from dbtrim.core.registry import Extension, TableRegistry, build_registry
from dbtrim.exceptions import ConfigError
from dbtrim.input_validators import (
    ValidationError,
    validate_output_target,
    validate_table_name,
    validate_table_patterns,
    validate_table_prefix,
    validate_tenant_ids,
)
from dbtrim.logging import get_logger, log_export_complete, log_export_start
from dbtrim.models import ArtifactKind, ExportArtifact, ExportPlan, ExportResult, ExportStats
from dbtrim.utils.connection import get_adapter_for_url, parse_database_url

logger = get_logger(__name__)

# Progress callbacks receive status updates during an export.
# Signature: (stage: str, message: str, current: int, total: int) -> None
ProgressCallback = Callable[[str, str, int, int], None]


class Exporter:
    """
    Runs one export.

    Flow:
    1. Build the table registry from the extensions
    2. Connect and list base tables
    3. Partition tables into verbatim copies and per-tenant subset queues
    4. Dump the structure, then each table's data, appending to the output
    5. Drop shadow tables and temporary files, whatever happened before
    """

    def __init__(
        self,
        config: ExportConfig,
        adapter: DatabaseAdapter | None = None,
        extensions: Iterable[Extension] | None = None,
        progress_callback: ProgressCallback | None = None,
        stdout: BinaryIO | None = None,
    ):
        self.config = config
        self.adapter = adapter
        self._owns_adapter = adapter is None
        self._connected = adapter is not None
        self.extensions = list(extensions) if extensions is not None else None
        self.progress_callback = progress_callback
        self._stdout = stdout

        self.registry: TableRegistry | None = None
        self.plan: ExportPlan | None = None
        self.store: ArtifactStore | None = None
        self.cleanup_report: CleanupReport | None = None
        self._cleaned_up = False

        self._validate_config()

    def _log(self, stage: str, message: str, current: int = 0, total: int = 0) -> None:
        if self.progress_callback:
            self.progress_callback(stage, message, current, total)

    def _validate_config(self) -> None:
        try:
            validate_table_prefix(self.config.table_prefix)
            validate_table_patterns(self.config.include_tables)
            validate_table_patterns(self.config.exclude_tables)
            validate_tenant_ids(self.config.tenants)
            validate_tenant_ids(self.config.exclude_tenants)
            for name in [*self.config.global_tables, *self.config.table_overrides]:
                validate_table_name(name)
            validate_output_target(self.config.output)
        except ValidationError as e:
            raise ConfigError(str(e)) from e

        if self.config.max_closure_iterations < 1:
            raise ConfigError("max_closure_iterations must be at least 1")

    def build_registry(self) -> TableRegistry:
        from dbtrim.extensions import config_extensions, load_extensions

        if self.extensions is not None:
            extensions = list(self.extensions)
        else:
            extensions = load_extensions(self.config.extensions)
        extensions.extend(config_extensions(self.config))

        self.registry = build_registry(extensions)
        return self.registry

    def _connect(self) -> DatabaseAdapter:
        if self.adapter is None:
            self.adapter = get_adapter_for_url(
                self.config.database_url,
                **self._adapter_options(),
            )
        if not self._connected:
            with logger.timed_operation("database_connection"):
                self.adapter.connect(self.config.database_url)
            self._connected = True
            self._log("connect", "Connected successfully")
        return self.adapter

    def _adapter_options(self) -> dict:
        if parse_database_url(self.config.database_url).db_type == DatabaseType.POSTGRESQL:
            return {"schema": self.config.schema, "pg_dump_path": self.config.pg_dump_path}
        return {}

    def _partitioner(self, registry: TableRegistry) -> TenantPartitioner:
        return TenantPartitioner(
            registry,
            self.config.table_prefix,
            include_tables=self.config.include_tables,
            exclude_tables=self.config.exclude_tables,
            tenants=self.config.tenants,
            exclude_tenants=self.config.exclude_tenants,
        )

    def plan_export(self) -> ExportPlan:
        """Build the export plan without writing anything."""
        registry = self.registry or self.build_registry()
        adapter = self._connect()
        try:
            self.plan = self._partitioner(registry).partition(adapter.list_base_tables())
            return self.plan
        finally:
            if self._owns_adapter:
                adapter.close()
                self._connected = False

    def export(self) -> ExportResult:
        start_time = time.monotonic()
        registry = self.registry

        try:
            if registry is None:
                registry = self.build_registry()
            adapter = self._connect()
            output = self.config.resolve_output(adapter.database_name)
            if self.config.database_url:
                log_export_start(logger, self.config.database_url, output)
            result = self._run(adapter, registry, output)
        except Exception as e:
            logger.error(
                "Export failed",
                error=str(e),
                duration_ms=int((time.monotonic() - start_time) * 1000),
            )
            raise
        finally:
            self._cleanup(registry)
            if self._owns_adapter and self.adapter is not None:
                self.adapter.close()
                self._connected = False

        result.duration_ms = int((time.monotonic() - start_time) * 1000)
        log_export_complete(
            logger,
            result.output,
            result.size_bytes,
            result.stats.tables_copied + result.stats.tables_subset,
            result.duration_ms,
        )
        return result

    def _run(self, adapter: DatabaseAdapter, registry: TableRegistry, output: str) -> ExportResult:
        self.store = store = ArtifactStore(self.config.temp_dir)

        self._log("plan", "Listing tables...")
        tables = adapter.list_base_tables()
        self.plan = plan = self._partitioner(registry).partition(tables)

        materializer = Materializer(
            adapter,
            registry,
            store,
            tables,
            max_closure_iterations=self.config.max_closure_iterations,
        )
        stats = ExportStats(conflicts=len(registry.conflicts), tables_excluded=len(plan.excluded))
        total = len(plan.verbatim) + len(plan.work_items)
        done = 0

        with FileAssembler(output, stdout=self._stdout) as assembler:
            self._log("structure", "Dumping table structure...")
            structure_path = store.new_path("structure")
            adapter.dump_structure(structure_path, plan.structure_tables())
            assembler.append(ExportArtifact(structure_path, ArtifactKind.STRUCTURE))

            for table in plan.verbatim:
                done += 1
                self._log("copy", f"Copying {table.raw_name}", done, total)
                artifact = materializer.copy_verbatim(table)
                assembler.append(artifact)
                stats.tables_copied += 1
                stats.rows += artifact.rows

            for tenant_id, queue in plan.queues.items():
                names = TableNames(self.config.table_prefix, tenant_id, registry.global_tables)
                tenant_logger = logger.with_context(tenant=tenant_id)
                tenant_logger.info("Processing tenant", entries=len(queue))

                with tenant_scope(adapter, tenant_id):
                    for item in queue:
                        done += 1
                        self._log("subset", f"Subsetting {item.table.raw_name}", done, total)
                        artifact = materializer.materialize(item, names)
                        if artifact is None:
                            continue
                        assembler.append(artifact)
                        if artifact.needs_rewrite:
                            stats.tables_subset += 1
                        else:
                            stats.tables_copied += 1
                        stats.rows += artifact.rows

        stats.fallbacks = len(materializer.fallbacks)
        return ExportResult(
            output=output,
            size_bytes=assembler.output_size(),
            tenants=plan.tenant_ids,
            stats=stats,
        )

    def _cleanup(self, registry: TableRegistry | None) -> None:
        if self._cleaned_up:
            return
        self._cleaned_up = True

        self._log("cleanup", "Removing temporary tables and files...")
        self.cleanup_report = cleanup(
            self.adapter if self._connected else None,
            registry,
            self.config.table_prefix,
            self.plan.tenant_ids if self.plan else (),
            plan=self.plan,
            store=self.store,
        )


def export_database(
    output_target: str | Path | None,
    options: ExportConfig,
    adapter: DatabaseAdapter | None = None,
    extensions: Iterable[Extension] | None = None,
    progress_callback: ProgressCallback | None = None,
) -> ExportResult:
    """
    Export a reduced copy of the database described by ``options``.

    ``output_target`` is a file path, ``-`` for standard output, or None for
    a generated ``<db>-<date>-<hash>.sql`` name in the working directory.
    Returns where the export was written and its size.
    """
    if output_target is not None:
        options = dataclasses.replace(options, output=str(output_target))
    exporter = Exporter(
        options,
        adapter=adapter,
        extensions=extensions,
        progress_callback=progress_callback,
    )
    return exporter.export()
