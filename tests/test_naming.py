"""Tests for shadow table names and tenant-aware name resolution."""

from dbtrim.constants import MAX_IDENTIFIER_LENGTH, SHADOW_TABLE_PREFIX
from dbtrim.core.naming import TableNames, is_shadow_table, shadow_table_name, tenant_prefix


class TestShadowTableName:
    """Tests for shadow_table_name()."""

    def test_deterministic(self):
        assert shadow_table_name("wp_posts") == shadow_table_name("wp_posts")

    def test_prefixed_and_recognised(self):
        name = shadow_table_name("wp_posts")
        assert name.startswith(SHADOW_TABLE_PREFIX)
        assert is_shadow_table(name)
        assert not is_shadow_table("wp_posts")

    def test_distinct_tables_get_distinct_names(self):
        assert shadow_table_name("wp_posts") != shadow_table_name("wp_2_posts")

    def test_long_names_are_truncated_but_unique(self):
        base = "wp_" + "x" * 80
        first = shadow_table_name(base + "_a")
        second = shadow_table_name(base + "_b")

        assert len(first) <= MAX_IDENTIFIER_LENGTH
        assert len(second) <= MAX_IDENTIFIER_LENGTH
        assert first != second


class TestTenantPrefix:
    """Tests for tenant_prefix()."""

    def test_default_tenant_uses_base_prefix(self):
        assert tenant_prefix("wp_", 1) == "wp_"

    def test_other_tenants_get_numbered_prefix(self):
        assert tenant_prefix("wp_", 3) == "wp_3_"

    def test_empty_base_prefix(self):
        assert tenant_prefix("", 3) == ""


class TestTableNames:
    """Tests for TableNames resolution."""

    def test_physical_for_tenant(self):
        names = TableNames("wp_", 2)
        assert names.physical("posts") == "wp_2_posts"
        assert names.prefix == "wp_2_"

    def test_global_tables_use_base_prefix(self):
        names = TableNames("wp_", 2, frozenset({"users"}))
        assert names.physical("users") == "wp_users"
        assert names.shadow("users") == shadow_table_name("wp_users")

    def test_for_tenant_keeps_globals(self):
        names = TableNames("wp_", 1, frozenset({"users"})).for_tenant(5)
        assert names.tenant_id == 5
        assert names.physical("posts") == "wp_5_posts"
        assert names.physical("users") == "wp_users"
