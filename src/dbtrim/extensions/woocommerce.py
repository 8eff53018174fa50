"""
WooCommerce and the plugins built on it.

Orders, subscriptions and memberships are stored as posts, so these
extensions add rows to the posts shadow from the core hooks and fire their
own hooks (``orders_after_orders``, ``subscriptions_after_subscriptions``,
``memberships_after_memberships``) for the next layer.
"""

from typing import TYPE_CHECKING

from dbtrim.constants import RECENT_ENTITY_LIMIT
from dbtrim.core.registry import Extension, Registrar
from dbtrim.extensions.core import live_posts_sql, register_dependent

if TYPE_CHECKING:
    from dbtrim.core.materializer import SubsetContext


def _add_post_types(*post_types: str):
    def add(types: list[str], ctx: "SubsetContext") -> list[str]:
        return types + [t for t in post_types if t not in types]

    return add


class WooCommerce(Extension):
    name = "woocommerce"
    description = "Recent orders, refunds, used coupons, products, customers and order data"

    def setup(self, registrar: Registrar) -> None:
        register_dependent(
            registrar, "woocommerce_order_items", "posts", "order_id", priority=25
        )
        register_dependent(
            registrar,
            "woocommerce_order_itemmeta",
            "woocommerce_order_items",
            "order_item_id",
            "order_item_id",
            priority=25,
        )
        register_dependent(
            registrar,
            "woocommerce_downloadable_product_permissions",
            "posts",
            "order_id",
            priority=27,
        )
        register_dependent(
            registrar, "woocommerce_payment_tokens", "users", "user_id", priority=35
        )
        register_dependent(
            registrar,
            "woocommerce_payment_tokenmeta",
            "woocommerce_payment_tokens",
            "payment_token_id",
            "token_id",
            priority=35,
        )
        registrar.exclude("wc_download_log", "woocommerce_sessions", "woocommerce_log")

        registrar.add_filter(
            "ignore_straight_types",
            _add_post_types("shop_order", "shop_order_refund", "shop_coupon", "product"),
        )
        registrar.add_action("posts_after_posts", self.add_orders)
        registrar.add_action("posts_after_posts", self.add_coupons)
        registrar.add_action("posts_after_posts", self.add_products)
        registrar.add_action("users_after_authors", self.add_customers)

    def add_orders(self, ctx: "SubsetContext") -> None:
        ctx.merge_insert(
            live_posts_sql(ctx, "p.post_type = 'shop_order'", recent=RECENT_ENTITY_LIMIT)
        )

        ctx.do_action("orders_after_orders")

        ctx.merge_insert(
            live_posts_sql(
                ctx,
                f"p.post_type = 'shop_order_refund' "
                f"AND p.post_parent IN (SELECT p2.{ctx.q('ID')} FROM {ctx.shadow_sql('posts')} p2)",
            )
        )

    def add_coupons(self, ctx: "SubsetContext") -> None:
        """Only coupons used by an exported order are kept."""
        if not ctx.has_table("woocommerce_order_items"):
            return
        used = (
            f"SELECT oi.order_item_name FROM {ctx.table_sql('woocommerce_order_items')} oi "
            f"WHERE oi.order_id IN (SELECT p2.{ctx.q('ID')} FROM {ctx.shadow_sql('posts')} p2) "
            f"AND oi.order_item_type = 'coupon'"
        )
        ctx.merge_insert(
            live_posts_sql(ctx, f"p.post_type = 'shop_coupon' AND p.post_title IN ({used})")
        )

    def add_products(self, ctx: "SubsetContext") -> None:
        ctx.merge_insert(live_posts_sql(ctx, "p.post_type = 'product'"))

    def add_customers(self, ctx: "SubsetContext") -> None:
        posts = ctx.parent_rows_sql("posts")
        postmeta = ctx.parent_rows_sql("postmeta")
        if posts is None or postmeta is None:
            return

        id_ = ctx.q("ID")
        ctx.merge_insert(
            f"SELECT u.* FROM {posts} p "
            f"INNER JOIN {postmeta} pm ON p.{id_} = pm.post_id AND pm.meta_key = '_customer_user' "
            f"INNER JOIN {ctx.table_sql()} u ON CAST(u.{id_} AS TEXT) = pm.meta_value "
            f"GROUP BY {ctx.key_group('u')}"
        )


def _related_posts_sql(
    ctx: "SubsetContext", post_type: str | None, meta_keys: tuple[str, ...], owner_type: str
) -> str:
    """
    Posts whose meta (one of ``meta_keys``) holds the id of an exported
    ``owner_type`` post.
    """
    id_ = ctx.q("ID")
    sql = (
        f"SELECT p.* FROM {ctx.table_sql('posts')} p "
        f"INNER JOIN {ctx.table_sql('postmeta')} pm ON p.{id_} = pm.post_id "
        f"AND pm.meta_key IN {ctx.literal_list(meta_keys)} "
        f"WHERE pm.meta_value IN ("
        f"SELECT CAST(p2.{id_} AS TEXT) FROM {ctx.shadow_sql('posts')} p2 "
        f"WHERE p2.post_type = {ctx.literal(owner_type)})"
    )
    if post_type is not None:
        sql += f" AND p.post_type = {ctx.literal(post_type)}"
    return sql


class Subscriptions(Extension):
    name = "woocommerce_subscriptions"
    description = "Recent subscriptions and their switch, renewal and resubscribe orders"

    def setup(self, registrar: Registrar) -> None:
        registrar.add_filter("ignore_straight_types", _add_post_types("shop_subscription"))
        registrar.add_action("orders_after_orders", self.add_subscriptions)

    def add_subscriptions(self, ctx: "SubsetContext") -> None:
        ctx.merge_insert(
            live_posts_sql(ctx, "p.post_type = 'shop_subscription'", recent=RECENT_ENTITY_LIMIT)
        )

        if ctx.has_table("postmeta"):
            ctx.merge_insert(
                _related_posts_sql(
                    ctx,
                    None,
                    ("_subscription_switch", "_subscription_renewal", "subscription_resubscribe"),
                    "shop_subscription",
                )
            )

        ctx.do_action("subscriptions_after_subscriptions")


class Memberships(Extension):
    name = "woocommerce_memberships"
    description = "Recent user memberships and memberships tied to exported subscriptions"

    def setup(self, registrar: Registrar) -> None:
        registrar.add_filter("ignore_straight_types", _add_post_types("wc_user_membership"))
        registrar.add_action("orders_after_orders", self.add_memberships)

    def add_memberships(self, ctx: "SubsetContext") -> None:
        ctx.merge_insert(
            live_posts_sql(ctx, "p.post_type = 'wc_user_membership'", recent=RECENT_ENTITY_LIMIT)
        )

        if ctx.has_table("postmeta"):
            ctx.merge_insert(
                _related_posts_sql(
                    ctx, "wc_user_membership", ("_subscription_id",), "shop_subscription"
                )
            )

        ctx.do_action("memberships_after_memberships")


class ActionScheduler(Extension):
    """Scheduled actions whose payload names an exported subscription or membership."""

    name = "action_scheduler"
    description = "Scheduled actions of exported subscriptions and memberships"

    def setup(self, registrar: Registrar) -> None:
        registrar.add_filter("ignore_straight_types", _add_post_types("scheduled-action"))
        registrar.add_action(
            "subscriptions_after_subscriptions",
            lambda ctx: self.add_actions(ctx, "shop_subscription", "subscription_id"),
        )
        registrar.add_action(
            "memberships_after_memberships",
            lambda ctx: self.add_actions(ctx, "wc_user_membership", "user_membership_id"),
        )

    def add_actions(self, ctx: "SubsetContext", owner_type: str, field: str) -> None:
        # Payloads look like {"subscription_id":123}
        opening = ctx.literal('{"%s":' % field)
        closing = ctx.literal("}")
        payload = f"{opening} || CAST(p2.{ctx.q('ID')} AS TEXT) || {closing}"
        ctx.merge_insert(
            f"SELECT p.* FROM {ctx.table_sql('posts')} p "
            f"WHERE p.post_type = 'scheduled-action' AND p.post_content IN ("
            f"SELECT {payload} FROM {ctx.shadow_sql('posts')} p2 "
            f"WHERE p2.post_type = {ctx.literal(owner_type)})"
        )


class OrderIndex(Extension):
    name = "woocommerce_order_index"
    description = "Customer order index rows of exported orders"

    def setup(self, registrar: Registrar) -> None:
        register_dependent(
            registrar, "woocommerce_customer_order_index", "posts", "order_id", priority=45
        )
