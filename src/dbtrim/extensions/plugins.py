"""Extensions for common plugins: subset rules and tables whose data is dropped."""

from typing import TYPE_CHECKING

from dbtrim.constants import DEFAULT_TENANT_ID
from dbtrim.core.registry import Extension, Registrar
from dbtrim.extensions.core import register_dependent

if TYPE_CHECKING:
    from dbtrim.core.materializer import SubsetContext


class EWWWImageOptimizer(Extension):
    name = "ewwwio"
    description = "Optimisation records of exported attachments"

    def setup(self, registrar: Registrar) -> None:
        register_dependent(registrar, "ewwwio_images", "posts", "id", priority=45)


class SharedContentRelationships(Extension):
    """
    Relationships between users and posts across sites.

    Both tables are shared by every site. Each site pass adds the
    relationships between its exported posts and the exported users, so the
    final dump holds the union over all sites.
    """

    name = "scr"
    description = "User/post relationships of exported rows (shared tables)"

    TABLES = ("scr_relationships", "scr_relationshipmeta")

    def setup(self, registrar: Registrar) -> None:
        registrar.subset(
            "scr_relationships",
            self.subset_relationships,
            priority=45,
            depends_on=("posts", "users"),
        )
        register_dependent(
            registrar,
            "scr_relationshipmeta",
            "scr_relationships",
            "scr_relationship_id",
            "rel_id",
            priority=45,
        )
        registrar.add_filter("global_tables", self.register_global_tables, priority=45)

    def register_global_tables(self, tables: set[str]) -> set[str]:
        return tables | set(self.TABLES)

    def subset_relationships(self, ctx: "SubsetContext") -> None:
        ctx.create_shadow()
        posts = ctx.parent_rows_sql("posts")
        users = ctx.parent_rows_sql("users")
        if posts is None or users is None:
            return

        id_ = ctx.q("ID")

        def side(n: int, object_type: str, site: int, source: str) -> str:
            return (
                f"scr.object{n}_type = {ctx.literal(object_type)} "
                f"AND scr.object{n}_site = {int(site)} "
                f"AND scr.object{n}_id IN (SELECT o.{id_} FROM {source} o)"
            )

        # Users live on the main site; posts on the site being processed
        user_first = f"{side(1, 'user', DEFAULT_TENANT_ID, users)} AND {side(2, 'post', ctx.tenant_id, posts)}"
        post_first = f"{side(1, 'post', ctx.tenant_id, posts)} AND {side(2, 'user', DEFAULT_TENANT_ID, users)}"
        for condition in (user_first, post_first):
            ctx.merge_insert(f"SELECT scr.* FROM {ctx.table_sql()} scr WHERE {condition}")


class ExcludedTables(Extension):
    """Base for extensions that only drop the data of some tables."""

    tables: tuple[str, ...] = ()

    def setup(self, registrar: Registrar) -> None:
        registrar.exclude(*self.tables)


class GravityForms(ExcludedTables):
    name = "gravity_forms"
    description = "Drops form entries, notes and view counters"
    tables = (
        "gf_entry",
        "gf_entry_meta",
        "gf_entry_notes",
        "gf_form_view",
        "rg_lead",
        "rg_lead_detail",
        "rg_lead_detail_long",
        "rg_lead_meta",
        "rg_lead_notes",
        "rg_form_view",
        "rg_incomplete_submissions",
    )


class Redirection(ExcludedTables):
    name = "redirection"
    description = "Drops redirect and 404 logs"
    tables = ("redirection_logs", "redirection_404")


class SmartTransients(ExcludedTables):
    name = "smart_transients"
    description = "Drops stored transients"
    tables = ("sch_smart_transients",)


class AffiliateWP(ExcludedTables):
    name = "affiliate_wp"
    description = "Drops affiliate visit logs"
    tables = ("affiliate_wp_visits",)


class AbandonedCarts(ExcludedTables):
    name = "abandoned_carts"
    description = "Drops abandoned cart history"
    tables = ("ac_abandoned_cart_history", "ac_guest_abandoned_cart_history")


class OrderGenerator(ExcludedTables):
    name = "order_generator"
    description = "Drops the generated fake names table"
    tables = ("fakenames",)
