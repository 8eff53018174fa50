"""Failures at every stage leave no shadow tables, temp files or partial output."""

import sqlite3

import pytest

from dbtrim.config import ExportConfig
from dbtrim.core.cleanup import cleanup, derive_shadow_names
from dbtrim.core.exporter import Exporter
from dbtrim.core.naming import shadow_table_name
from dbtrim.core.registry import build_registry
from dbtrim.exceptions import ArtifactIOFailure, SubsetQueryFailure, TenantSwitchFailure
from dbtrim.extensions.core import CoreExtension

from tests.conftest import FailingSQLiteAdapter, abc_extension, shadow_tables, sqlite_url


def run_failing_export(database, tmp_path, prefix, extensions, **adapter_args):
    temp_dir = tmp_path / "tmp"
    temp_dir.mkdir(exist_ok=True)
    config = ExportConfig(
        database_url=sqlite_url(database),
        output=str(tmp_path / "out.sql"),
        table_prefix=prefix,
        temp_dir=str(temp_dir),
    )
    adapter = FailingSQLiteAdapter(**adapter_args)
    adapter.connect(config.database_url)
    exporter = Exporter(config, adapter=adapter, extensions=extensions)
    return exporter, adapter


def assert_clean(database, tmp_path):
    conn = sqlite3.connect(database)
    try:
        assert shadow_tables(conn) == []
    finally:
        conn.close()
    assert list((tmp_path / "tmp").iterdir()) == []
    assert not (tmp_path / "out.sql").exists()
    assert not (tmp_path / "out.sql.partial").exists()


class TestFailureCleanup:
    """Each failing stage aborts the export and leaves everything clean."""

    @pytest.mark.parametrize(
        "stage,table,error",
        [
            ("merge", "app_b", SubsetQueryFailure),
            ("dump", "app_b", ArtifactIOFailure),
            ("structure", None, ArtifactIOFailure),
        ],
    )
    def test_stage_failure(self, abc_database, tmp_path, stage, table, error):
        exporter, adapter = run_failing_export(
            abc_database, tmp_path, "app_", [abc_extension()], fail_stage=stage, fail_table=table
        )
        try:
            with pytest.raises(error) as exc_info:
                exporter.export()
        finally:
            adapter.close()

        if table is not None:
            assert exc_info.value.table == table
        assert_clean(abc_database, tmp_path)

    def test_failure_after_earlier_tables_were_written(self, abc_database, tmp_path):
        # app_a is fully exported before app_b fails
        exporter, adapter = run_failing_export(
            abc_database, tmp_path, "app_", [abc_extension()], fail_stage="merge", fail_table="app_b"
        )
        try:
            with pytest.raises(SubsetQueryFailure):
                exporter.export()
        finally:
            adapter.close()

        assert shadow_table_name("app_a") in exporter.cleanup_report.dropped
        assert_clean(abc_database, tmp_path)

    def test_tenant_switch_failure(self, wp_multisite_database, tmp_path):
        exporter, adapter = run_failing_export(
            wp_multisite_database,
            tmp_path,
            "wp_",
            [CoreExtension()],
            fail_stage="tenant-switch",
        )
        try:
            with pytest.raises(TenantSwitchFailure) as exc_info:
                exporter.export()
        finally:
            adapter.close()

        assert exc_info.value.tenant_id == 2
        assert_clean(wp_multisite_database, tmp_path)

    def test_drop_failure_does_not_fail_export(self, abc_database, tmp_path):
        exporter, adapter = run_failing_export(
            abc_database, tmp_path, "app_", [abc_extension()], fail_stage="drop", fail_table="app_a"
        )
        try:
            result = exporter.export()
        finally:
            adapter.close()

        assert (tmp_path / "out.sql").exists()
        assert result.size_bytes > 0
        report = exporter.cleanup_report
        assert not report.clean
        assert report.failed == [shadow_table_name("app_a")]
        assert shadow_table_name("app_b") in report.dropped


class TestCleanupFunctions:
    """Tests for derive_shadow_names() and cleanup()."""

    def test_derived_names_cover_tenants_and_globals(self):
        registry = build_registry([CoreExtension()])
        names = derive_shadow_names(registry, "wp_", [3])

        assert shadow_table_name("wp_posts") in names
        assert shadow_table_name("wp_3_posts") in names
        assert shadow_table_name("wp_users") in names
        assert shadow_table_name("wp_3_users") not in names
        assert len(names) == len(set(names))

    def test_cleanup_without_adapter(self, tmp_path):
        report = cleanup(None, None, "wp_")
        assert report.clean
        assert report.dropped == []

    def test_cleanup_drops_leftovers_of_a_crashed_run(self, memory_adapter):
        registry = build_registry([abc_extension()])
        memory_adapter.run_query("CREATE TABLE app_a (id INTEGER PRIMARY KEY)")
        memory_adapter.create_shadow_table(shadow_table_name("app_a"), "app_a")

        report = cleanup(memory_adapter, registry, "app_")

        assert report.clean
        assert not memory_adapter.table_exists(shadow_table_name("app_a"))
