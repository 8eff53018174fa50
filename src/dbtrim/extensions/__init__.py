"""
Built-in extensions and extension loading.

An extension is named either by its built-in name (``core``,
``woocommerce``...) or by an import path ``package.module:ClassName``.
"""

import importlib
from collections.abc import Iterable

from dbtrim.config import ExportConfig, TableOverride
from dbtrim.constants import OVERRIDE_PRIORITY
from dbtrim.core.registry import Extension, Registrar
from dbtrim.exceptions import ConfigError
from dbtrim.logging import get_logger

logger = get_logger(__name__)

BUILTIN_EXTENSIONS: dict[str, str] = {
    "core": "dbtrim.extensions.core:CoreExtension",
    "woocommerce": "dbtrim.extensions.woocommerce:WooCommerce",
    "woocommerce_subscriptions": "dbtrim.extensions.woocommerce:Subscriptions",
    "woocommerce_memberships": "dbtrim.extensions.woocommerce:Memberships",
    "action_scheduler": "dbtrim.extensions.woocommerce:ActionScheduler",
    "woocommerce_order_index": "dbtrim.extensions.woocommerce:OrderIndex",
    "ewwwio": "dbtrim.extensions.plugins:EWWWImageOptimizer",
    "scr": "dbtrim.extensions.plugins:SharedContentRelationships",
    "gravity_forms": "dbtrim.extensions.plugins:GravityForms",
    "redirection": "dbtrim.extensions.plugins:Redirection",
    "smart_transients": "dbtrim.extensions.plugins:SmartTransients",
    "affiliate_wp": "dbtrim.extensions.plugins:AffiliateWP",
    "abandoned_carts": "dbtrim.extensions.plugins:AbandonedCarts",
    "order_generator": "dbtrim.extensions.plugins:OrderGenerator",
}
"""Built-in extension names mapped to their import paths."""

DEFAULT_EXTENSIONS = tuple(BUILTIN_EXTENSIONS)
"""Extensions loaded when none are configured, in setup order."""

__all__ = [
    "BUILTIN_EXTENSIONS",
    "DEFAULT_EXTENSIONS",
    "GlobalTables",
    "TableOverrides",
    "config_extensions",
    "load_extension",
    "load_extensions",
]


def load_extension(name: str) -> Extension:
    """
    Instantiate one extension.

    Raises:
        ConfigError: If the name is unknown or does not resolve to an
            Extension subclass
    """
    target = BUILTIN_EXTENSIONS.get(name, name)
    if ":" not in target:
        known = ", ".join(BUILTIN_EXTENSIONS)
        raise ConfigError(f"Unknown extension '{name}'. Built-in extensions: {known}")

    module_name, _, class_name = target.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"Cannot import extension module '{module_name}': {e}") from e

    cls = getattr(module, class_name, None)
    if not (isinstance(cls, type) and issubclass(cls, Extension)):
        raise ConfigError(f"'{target}' is not an Extension class")

    extension = cls()
    logger.debug("Extension loaded", extension=extension.name or class_name, target=target)
    return extension


def load_extensions(names: Iterable[str] | None = None) -> list[Extension]:
    """Load extensions by name; None loads every built-in extension."""
    if names is None:
        names = DEFAULT_EXTENSIONS
    return [load_extension(name) for name in names]


class GlobalTables(Extension):
    """Marks extra logical tables as shared by every tenant."""

    name = "config:global_tables"

    def __init__(self, tables: Iterable[str]):
        self.tables = tuple(tables)

    def setup(self, registrar: Registrar) -> None:
        registrar.add_global(*self.tables)


class TableOverrides(Extension):
    """Forces per-table skip/copy policies; registered last so they win."""

    name = "config:tables"

    def __init__(self, overrides: dict[str, TableOverride]):
        self.overrides = dict(overrides)

    def setup(self, registrar: Registrar) -> None:
        for table, override in self.overrides.items():
            if override == TableOverride.SKIP:
                registrar.exclude(table, priority=OVERRIDE_PRIORITY)
            else:
                registrar.copy(table, priority=OVERRIDE_PRIORITY)


def config_extensions(config: ExportConfig) -> list[Extension]:
    """Extensions built from the export configuration itself."""
    extensions: list[Extension] = []
    if config.global_tables:
        extensions.append(GlobalTables(config.global_tables))
    if config.table_overrides:
        extensions.append(TableOverrides(config.table_overrides))
    return extensions
