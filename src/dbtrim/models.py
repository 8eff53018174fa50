from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from dbtrim.constants import DEFAULT_TENANT_ID, STDOUT_TARGET

TEXT_TYPE_MARKERS = ("text", "char")


def is_text_type(data_type: str) -> bool:
    """Check if a declared column type holds text (text, varchar, character varying...)."""
    lowered = data_type.lower()
    return any(marker in lowered for marker in TEXT_TYPE_MARKERS)


@dataclass(frozen=True)
class ColumnInfo:
    """Result of probing a table's columns."""

    table: str
    primary_keys: tuple[str, ...]
    text_columns: tuple[str, ...]
    all_columns: tuple[str, ...]

    @property
    def has_primary_key(self) -> bool:
        return bool(self.primary_keys)


class PolicyKind(Enum):
    """How a table's data is exported."""

    COPY = "copy"
    EXCLUDED = "excluded"
    SUBSET = "subset"


@dataclass(frozen=True)
class TablePolicy:
    """
    Registered export policy for one logical table.

    ``priority`` is the sequence number assigned when the name was first
    registered; ``handler_id`` is only set for SUBSET policies and is looked
    up in the registry's handler table.
    """

    name: str
    kind: PolicyKind
    priority: int
    handler_id: str | None = None
    depends_on: tuple[str, ...] = ()
    source: str = ""

    def __post_init__(self) -> None:
        if self.kind == PolicyKind.SUBSET and not self.handler_id:
            raise ValueError(f"Subset policy for '{self.name}' needs a handler")
        if self.kind != PolicyKind.SUBSET and self.handler_id:
            raise ValueError(f"Only subset policies carry a handler ('{self.name}')")

    def describe(self) -> str:
        if self.kind == PolicyKind.SUBSET:
            return f"subset:{self.handler_id}"
        return self.kind.value


@dataclass(frozen=True)
class PhysicalTable:
    """A table as found in the database, split into tenant and logical name."""

    raw_name: str
    logical_name: str
    tenant_id: int = DEFAULT_TENANT_ID
    is_global: bool = False
    prefixed: bool = True

    def __str__(self) -> str:
        return self.raw_name


@dataclass(frozen=True)
class WorkItem:
    """
    One entry of a tenant's processing queue.

    Global entries are replicated into every tenant queue; only one of the
    copies has ``export`` set so the shared shadow is dumped once.
    """

    table: PhysicalTable
    policy: TablePolicy
    shadow: str
    is_global_entry: bool = False
    export: bool = True

    @property
    def priority(self) -> int:
        return self.policy.priority


class ArtifactKind(Enum):
    STRUCTURE = "structure"
    DATA = "data"


@dataclass
class ExportArtifact:
    """A dump file waiting to be appended to the output."""

    path: Path
    kind: ArtifactKind
    table: str | None = None
    tenant_id: int | None = None
    rewrite_from: str | None = None
    rewrite_to: str | None = None
    rows: int = 0

    @property
    def needs_rewrite(self) -> bool:
        return bool(self.rewrite_from) and self.rewrite_from != self.rewrite_to


@dataclass
class ExportPlan:
    """Tables sorted into export modes and ordered tenant queues."""

    verbatim: list[PhysicalTable] = field(default_factory=list)
    excluded: list[PhysicalTable] = field(default_factory=list)
    queues: dict[int, list[WorkItem]] = field(default_factory=dict)
    filtered: list[str] = field(default_factory=list)

    @property
    def tenant_ids(self) -> list[int]:
        return list(self.queues.keys())

    @property
    def work_items(self) -> list[WorkItem]:
        return [item for queue in self.queues.values() for item in queue]

    def structure_tables(self) -> list[str]:
        """Every table whose schema is part of the export."""
        names = [t.raw_name for t in self.verbatim]
        names.extend(t.raw_name for t in self.excluded)
        seen = set(names)
        for item in self.work_items:
            if item.table.raw_name not in seen:
                seen.add(item.table.raw_name)
                names.append(item.table.raw_name)
        return sorted(names)


@dataclass
class ExportStats:
    tables_copied: int = 0
    tables_subset: int = 0
    tables_excluded: int = 0
    fallbacks: int = 0
    rows: int = 0
    conflicts: int = 0


@dataclass
class ExportResult:
    """Where the export went and how big it is."""

    output: str
    size_bytes: int
    tenants: list[int] = field(default_factory=list)
    stats: ExportStats = field(default_factory=ExportStats)
    duration_ms: int = 0

    @property
    def is_stdout(self) -> bool:
        return self.output == STDOUT_TARGET
