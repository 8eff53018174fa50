"""
Table handler registry.

Extensions contribute per-table export policies through a Registrar. Each
logical table gets one policy: copy it verbatim, exclude its data, or build
a subset with a handler. Registrations are applied in ascending priority
hint, ties broken by call order. The first registration of a name fixes its
sequence number (its place in the processing queue); later registrations of
the same name replace the policy but keep that place.

build() produces an immutable TableRegistry that is passed explicitly to the
rest of the pipeline.
"""

import itertools
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from dbtrim.constants import DEFAULT_PRIORITY
from dbtrim.exceptions import (
    DbtrimError,
    DependencyOrderError,
    RegistrationConflict,
    RegistrationError,
)
from dbtrim.logging import get_logger
from dbtrim.models import ExportArtifact, PolicyKind, TablePolicy

if TYPE_CHECKING:
    from dbtrim.core.materializer import SubsetContext

logger = get_logger(__name__)

Handler = Callable[["SubsetContext"], ExportArtifact | None]


@dataclass(frozen=True)
class _Hook:
    priority: int
    order: int
    callback: Callable[..., Any]


class HookSet:
    """
    Named actions and filters.

    Actions are called for their side effects; filters receive a value and
    return the (possibly changed) value. Callbacks run in ascending priority,
    then in the order they were added.
    """

    def __init__(self) -> None:
        self._actions: dict[str, list[_Hook]] = {}
        self._filters: dict[str, list[_Hook]] = {}
        self._order = itertools.count()
        self._frozen = False

    def add_action(self, name: str, callback: Callable[..., Any], priority: int = DEFAULT_PRIORITY):
        self._add(self._actions, name, callback, priority)

    def add_filter(self, name: str, callback: Callable[..., Any], priority: int = DEFAULT_PRIORITY):
        self._add(self._filters, name, callback, priority)

    def _add(self, table: dict, name: str, callback: Callable[..., Any], priority: int) -> None:
        if self._frozen:
            raise RuntimeError("Hooks cannot be added after the registry is built")
        table.setdefault(name, []).append(_Hook(priority, next(self._order), callback))
        table[name].sort(key=lambda h: (h.priority, h.order))

    def do_action(self, name: str, *args: Any) -> None:
        for hook in self._actions.get(name, ()):
            hook.callback(*args)

    def apply_filters(self, name: str, value: Any, *args: Any) -> Any:
        for hook in self._filters.get(name, ()):
            value = hook.callback(value, *args)
        return value

    def has_action(self, name: str) -> bool:
        return bool(self._actions.get(name))

    def freeze(self) -> "HookSet":
        self._frozen = True
        return self


class Extension:
    """
    A module that contributes table policies.

    Subclasses set ``name`` and implement ``setup()``, calling the
    registrar's methods. Extensions are set up in the order they are listed.
    """

    name: str = ""
    description: str = ""

    def setup(self, registrar: "Registrar") -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<Extension {self.name or type(self).__name__}>"


@dataclass(frozen=True)
class _Registration:
    table: str
    priority_hint: int
    order: int
    kind: PolicyKind
    handler: Handler | None
    handler_id: str | None
    depends_on: tuple[str, ...]
    source: str


class Registrar:
    """Collects registrations from extensions; see the module docstring."""

    def __init__(self) -> None:
        self._registrations: list[_Registration] = []
        self._global_tables: set[str] = set()
        self._hooks = HookSet()
        self._order = itertools.count()
        self._source = "direct"

    @contextmanager
    def source(self, name: str) -> Iterator[None]:
        """Attribute registrations made inside the block to ``name``."""
        previous = self._source
        self._source = name
        try:
            yield
        finally:
            self._source = previous

    def register(
        self,
        table: str,
        priority: int,
        policy: Handler | PolicyKind | None,
        depends_on: Iterable[str] = (),
        handler_id: str | None = None,
    ) -> None:
        """
        Register a policy for a logical table.

        ``policy`` is a handler callable (subset), ``PolicyKind.COPY``, or
        ``None``/``PolicyKind.EXCLUDED``.
        """
        if not table:
            raise ValueError("Table name cannot be empty")

        handler: Handler | None = None
        if isinstance(policy, PolicyKind):
            if policy == PolicyKind.SUBSET:
                raise ValueError(f"Subset policy for '{table}' needs a handler callable")
            kind = policy
        elif policy is None:
            kind = PolicyKind.EXCLUDED
        elif callable(policy):
            kind = PolicyKind.SUBSET
            handler = policy
        else:
            raise TypeError(f"Unsupported policy for '{table}': {policy!r}")

        self._registrations.append(
            _Registration(
                table=table,
                priority_hint=priority,
                order=next(self._order),
                kind=kind,
                handler=handler,
                handler_id=handler_id,
                depends_on=tuple(depends_on),
                source=self._source,
            )
        )

    def subset(
        self,
        table: str,
        handler: Handler,
        priority: int = DEFAULT_PRIORITY,
        depends_on: Iterable[str] = (),
        handler_id: str | None = None,
    ) -> None:
        self.register(table, priority, handler, depends_on=depends_on, handler_id=handler_id)

    def copy(self, table: str, priority: int = DEFAULT_PRIORITY) -> None:
        self.register(table, priority, PolicyKind.COPY)

    def exclude(self, *tables: str, priority: int = DEFAULT_PRIORITY) -> None:
        for table in tables:
            self.register(table, priority, PolicyKind.EXCLUDED)

    def add_global(self, *tables: str) -> None:
        """Mark logical tables as shared by all tenants."""
        self._global_tables.update(tables)

    def add_action(self, name: str, callback: Callable[..., Any], priority: int = DEFAULT_PRIORITY):
        self._hooks.add_action(name, callback, priority)

    def add_filter(self, name: str, callback: Callable[..., Any], priority: int = DEFAULT_PRIORITY):
        self._hooks.add_filter(name, callback, priority)

    def build(self) -> "TableRegistry":
        policies: dict[str, TablePolicy] = {}
        handlers: dict[str, Handler] = {}
        conflicts: list[RegistrationConflict] = []
        sequence = itertools.count()

        for reg in sorted(self._registrations, key=lambda r: (r.priority_hint, r.order)):
            handler_id = None
            if reg.handler is not None:
                handler_id = _assign_handler_id(reg, handlers)
                handlers[handler_id] = reg.handler

            previous = policies.get(reg.table)
            priority = previous.priority if previous else next(sequence)
            policy = TablePolicy(
                name=reg.table,
                kind=reg.kind,
                priority=priority,
                handler_id=handler_id,
                depends_on=reg.depends_on,
                source=reg.source,
            )

            if previous is not None:
                conflict = RegistrationConflict(
                    table=reg.table,
                    previous=f"{previous.describe()} ({previous.source})",
                    replacement=policy.describe(),
                    source=reg.source,
                )
                conflicts.append(conflict)
                logger.warning(
                    "Table policy overwritten",
                    table=reg.table,
                    previous=conflict.previous,
                    replacement=conflict.replacement,
                    source=reg.source,
                )

            policies[reg.table] = policy

        _check_dependencies(policies)

        hooks = self._hooks.freeze()
        global_tables = frozenset(hooks.apply_filters("global_tables", set(self._global_tables)))

        # Drop handlers whose table was later overwritten with another policy
        live_ids = {p.handler_id for p in policies.values() if p.handler_id}
        handlers = {k: v for k, v in handlers.items() if k in live_ids}

        return TableRegistry(policies, handlers, global_tables, hooks, tuple(conflicts))


def _assign_handler_id(reg: _Registration, handlers: dict[str, Handler]) -> str:
    base = reg.handler_id or f"{reg.source}:{getattr(reg.handler, '__qualname__', 'handler')}"
    candidate = base
    suffix = 2
    while candidate in handlers and handlers[candidate] is not reg.handler:
        candidate = f"{base}#{suffix}"
        suffix += 1
    return candidate


def _check_dependencies(policies: dict[str, TablePolicy]) -> None:
    """
    Subset tables may only depend on subset tables processed before them.

    Dependencies on copied or unregistered tables read the source table and
    need no ordering.
    """
    for policy in policies.values():
        if policy.kind != PolicyKind.SUBSET:
            continue
        for dependency in policy.depends_on:
            if dependency == policy.name:
                raise DependencyOrderError(policy.name, dependency, "a table cannot depend on itself")
            parent = policies.get(dependency)
            if parent is None or parent.kind != PolicyKind.SUBSET:
                continue
            if parent.priority >= policy.priority:
                raise DependencyOrderError(
                    policy.name,
                    dependency,
                    f"it is processed later (sequence {parent.priority} >= {policy.priority})",
                )


class TableRegistry:
    """Read-only view of the finished registrations."""

    def __init__(
        self,
        policies: dict[str, TablePolicy],
        handlers: dict[str, Handler],
        global_tables: frozenset[str],
        hooks: HookSet,
        conflicts: tuple[RegistrationConflict, ...] = (),
    ):
        ordered = dict(sorted(policies.items(), key=lambda item: item[1].priority))
        self._policies = MappingProxyType(ordered)
        self._handlers = MappingProxyType(dict(handlers))
        self._global_tables = global_tables
        self._hooks = hooks
        self._conflicts = conflicts

    def __contains__(self, name: object) -> bool:
        return name in self._policies

    def __iter__(self) -> Iterator[TablePolicy]:
        return iter(self._policies.values())

    def __len__(self) -> int:
        return len(self._policies)

    def get(self, name: str) -> TablePolicy | None:
        return self._policies.get(name)

    def policies(self) -> list[TablePolicy]:
        return list(self._policies.values())

    def subset_tables(self) -> list[str]:
        return [p.name for p in self._policies.values() if p.kind == PolicyKind.SUBSET]

    def resolve_handler(self, policy: TablePolicy) -> Handler:
        if policy.kind != PolicyKind.SUBSET or policy.handler_id is None:
            raise ValueError(f"Table '{policy.name}' has no subset handler ({policy.describe()})")
        try:
            return self._handlers[policy.handler_id]
        except KeyError:
            raise RegistrationError(policy.source, f"unknown handler '{policy.handler_id}'")

    @property
    def global_tables(self) -> frozenset[str]:
        return self._global_tables

    def is_global(self, name: str) -> bool:
        return name in self._global_tables

    @property
    def conflicts(self) -> tuple[RegistrationConflict, ...]:
        return self._conflicts

    def do_action(self, name: str, *args: Any) -> None:
        self._hooks.do_action(name, *args)

    def apply_filters(self, name: str, value: Any, *args: Any) -> Any:
        return self._hooks.apply_filters(name, value, *args)


def build_registry(extensions: Iterable[Extension]) -> TableRegistry:
    """
    Set up ``extensions`` in order and build the registry.

    Any failure inside an extension aborts the build; no partial registry is
    returned.
    """
    registrar = Registrar()
    for extension in extensions:
        name = extension.name or type(extension).__name__
        with registrar.source(name):
            try:
                extension.setup(registrar)
            except DbtrimError:
                raise
            except Exception as e:
                raise RegistrationError(name, str(e)) from e

    registry = registrar.build()
    logger.debug(
        "Table registry built",
        tables=len(registry),
        subset_tables=len(registry.subset_tables()),
        global_tables=len(registry.global_tables),
        conflicts=len(registry.conflicts),
    )
    return registry
