"""
WordPress core tables.

Posts are reduced to a recent window plus everything they reference; the
other core tables follow the exported posts and users. Hook names fired
here (``posts_after_posts``, ``users_after_admins``, ``users_after_authors``
and the ``ignore_straight_types`` filter) are the extension points the
plugin extensions attach to.
"""

from typing import TYPE_CHECKING

from dbtrim.constants import DEFAULT_PRIORITY, RECENT_ENTITY_LIMIT, UNATTACHED_MEDIA_LIMIT
from dbtrim.core.registry import Extension, Handler, Registrar

if TYPE_CHECKING:
    from dbtrim.core.materializer import SubsetContext

HIDDEN_POST_STATUSES = ("auto-draft", "trash")
"""Post statuses never exported."""

STRAIGHT_IGNORED_TYPES = ("post", "attachment", "revision")
"""Post types excluded from the copy-everything rule; rules below pick them."""

ADMINISTRATOR_ROLE_PATTERN = '%"administrator"%'

MULTISITE_GLOBAL_TABLES = (
    "users",
    "usermeta",
    "blogs",
    "blogmeta",
    "signups",
    "site",
    "sitemeta",
    "registration_log",
)


def live_posts_sql(
    ctx: "SubsetContext",
    condition: str,
    recent: int | None = None,
) -> str:
    """
    SELECT of non-trashed posts matching ``condition`` (on alias ``p``).

    With ``recent``, only the newest ``recent`` matching posts are selected.
    """
    sql = (
        f"SELECT p.* FROM {ctx.table_sql('posts')} p "
        f"WHERE p.post_status NOT IN {ctx.literal_list(HIDDEN_POST_STATUSES)} "
        f"AND {condition}"
    )
    if recent is not None:
        sql += f" ORDER BY p.post_date DESC LIMIT {int(recent)}"
    return sql


def dependent_handler(parent: str, key: str, parent_key: str = "ID") -> Handler:
    """Handler keeping the rows whose ``key`` points at an exported ``parent`` row."""

    def handler(ctx: "SubsetContext") -> None:
        ctx.dependent_subset(parent, key, parent_key)

    handler.__qualname__ = f"dependent_handler({parent}.{parent_key})"
    return handler


def register_dependent(
    registrar: Registrar,
    table: str,
    parent: str,
    key: str,
    parent_key: str = "ID",
    priority: int = DEFAULT_PRIORITY,
) -> None:
    registrar.subset(
        table,
        dependent_handler(parent, key, parent_key),
        priority=priority,
        depends_on=(parent,),
        handler_id=f"dependent:{table}",
    )


class CoreExtension(Extension):
    name = "core"
    description = "WordPress posts, comments, users, terms and options"

    def setup(self, registrar: Registrar) -> None:
        registrar.subset("posts", self.subset_posts, priority=10)
        register_dependent(registrar, "postmeta", "posts", "post_id", priority=10)

        register_dependent(registrar, "comments", "posts", "comment_post_ID", priority=20)
        register_dependent(
            registrar, "commentmeta", "comments", "comment_id", "comment_ID", priority=20
        )

        registrar.subset("users", self.subset_users, priority=30, depends_on=("posts",))
        register_dependent(registrar, "usermeta", "users", "user_id", priority=30)
        registrar.add_action("before_dump:usermeta", self.drop_session_tokens)

        registrar.subset(
            "term_relationships",
            self.subset_term_relationships,
            priority=40,
            depends_on=("posts", "users"),
        )
        register_dependent(
            registrar,
            "term_taxonomy",
            "term_relationships",
            "term_taxonomy_id",
            "term_taxonomy_id",
            priority=40,
        )
        register_dependent(registrar, "terms", "term_taxonomy", "term_id", "term_id", priority=40)
        register_dependent(registrar, "termmeta", "terms", "term_id", "term_id", priority=40)

        registrar.subset("options", self.subset_options, priority=50)

        registrar.add_global(*MULTISITE_GLOBAL_TABLES)

    def subset_posts(self, ctx: "SubsetContext") -> None:
        ignored = ctx.apply_filters("ignore_straight_types", list(STRAIGHT_IGNORED_TYPES))
        ctx.merge_insert(live_posts_sql(ctx, f"p.post_type NOT IN {ctx.literal_list(ignored)}"))
        ctx.merge_insert(live_posts_sql(ctx, "p.post_type = 'post'", recent=RECENT_ENTITY_LIMIT))

        ctx.do_action("posts_after_posts")

        id_ = ctx.q("ID")
        ctx.merge_insert(
            live_posts_sql(
                ctx,
                f"p.post_type = 'attachment' "
                f"AND p.post_parent IN (SELECT p2.{id_} FROM {ctx.shadow_sql()} p2)",
            )
        )
        ctx.merge_insert(
            live_posts_sql(
                ctx,
                "p.post_type = 'attachment' AND p.post_parent = 0",
                recent=UNATTACHED_MEDIA_LIMIT,
            )
        )

        ctx.close_hierarchy(key="ID", parent="post_parent")

    def subset_users(self, ctx: "SubsetContext") -> None:
        ctx.create_shadow()
        id_ = ctx.q("ID")

        if ctx.has_table("usermeta"):
            # Capabilities are stored per site: wp_capabilities, wp_2_capabilities...
            ctx.merge_insert(
                f"SELECT u.* FROM {ctx.table_sql()} u "
                f"INNER JOIN {ctx.table_sql('usermeta')} um ON um.user_id = u.{id_} "
                f"AND um.meta_key = {ctx.literal(ctx.prefix + 'capabilities')} "
                f"WHERE um.meta_value LIKE {ctx.literal(ADMINISTRATOR_ROLE_PATTERN)}"
            )

        ctx.do_action("users_after_admins")

        posts = ctx.parent_rows_sql("posts")
        if posts is not None:
            ctx.merge_insert(
                f"SELECT u.* FROM {ctx.table_sql()} u "
                f"INNER JOIN {posts} p ON p.post_author = u.{id_} "
                f"GROUP BY {ctx.key_group('u')}"
            )

        ctx.do_action("users_after_authors")

    def drop_session_tokens(self, ctx: "SubsetContext") -> None:
        ctx.run(f"DELETE FROM {ctx.shadow_sql()} WHERE meta_key = 'session_tokens'")

    def subset_term_relationships(self, ctx: "SubsetContext") -> None:
        ctx.create_shadow()
        id_ = ctx.q("ID")

        # Post terms first, then terms attached to exported users
        for owner in ("posts", "users"):
            source = ctx.parent_rows_sql(owner)
            if source is None:
                continue
            ctx.merge_insert(
                f"SELECT tr.* FROM {ctx.table_sql()} tr "
                f"INNER JOIN {source} o ON tr.object_id = o.{id_} "
                f"GROUP BY {ctx.key_group('tr')}"
            )

    def subset_options(self, ctx: "SubsetContext") -> None:
        ctx.copy_where(
            r"t.option_name NOT LIKE '\_transient%' ESCAPE '\' "
            r"AND t.option_name NOT LIKE '\_site\_transient%' ESCAPE '\'"
        )
