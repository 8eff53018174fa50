from dbtrim.core.exporter import Exporter, export_database
from dbtrim.core.registry import Extension, Registrar, TableRegistry, build_registry

__all__ = [
    "Exporter",
    "export_database",
    "Extension",
    "Registrar",
    "TableRegistry",
    "build_registry",
]
