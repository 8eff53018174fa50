"""
Fixed-point closure of self-referencing hierarchies.

A subset that keeps a row must also keep that row's parent, the parent's
parent and so on. Each pass adds the parents that are missing from the
shadow; the loop stops when a pass adds nothing. Every pass only selects
rows absent from the shadow, so cycles in the data cannot keep it running.
"""

from dataclasses import dataclass

from dbtrim.adapters.base import DatabaseAdapter
from dbtrim.constants import MAX_CLOSURE_ITERATIONS
from dbtrim.exceptions import QueryExecutionError, SubsetQueryFailure
from dbtrim.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ClosureResult:
    iterations: int
    rows_added: int


def missing_parents_query(
    adapter: DatabaseAdapter,
    shadow: str,
    source: str,
    key: str,
    parent: str,
) -> str:
    """SELECT of source rows that are the parent of a kept row but not kept yet."""
    q = adapter.quote_identifier
    return (
        f"SELECT src.* FROM {q(shadow)} child "
        f"LEFT JOIN {q(shadow)} present ON present.{q(key)} = child.{q(parent)} "
        f"INNER JOIN {q(source)} src ON src.{q(key)} = child.{q(parent)} "
        f"WHERE child.{q(parent)} IS NOT NULL AND child.{q(parent)} <> 0 "
        f"AND present.{q(key)} IS NULL"
    )


def close_hierarchy(
    adapter: DatabaseAdapter,
    shadow: str,
    source: str,
    key: str = "ID",
    parent: str = "post_parent",
    max_iterations: int = MAX_CLOSURE_ITERATIONS,
) -> ClosureResult:
    """
    Add missing ancestors of the rows in ``shadow`` until none are missing.

    NULL and 0 parent values mark roots.

    Raises:
        SubsetQueryFailure: If a pass fails or the loop does not settle
            within ``max_iterations`` passes
    """
    sql = missing_parents_query(adapter, shadow, source, key, parent)
    rows_added = 0

    for iteration in range(1, max_iterations + 1):
        try:
            affected = adapter.merge_insert(shadow, sql)
        except QueryExecutionError as e:
            raise SubsetQueryFailure(e.reason, table=source, stage="hierarchy-closure") from e

        if affected == 0:
            logger.debug(
                "Hierarchy closed",
                table=source,
                iterations=iteration,
                rows_added=rows_added,
            )
            return ClosureResult(iterations=iteration, rows_added=rows_added)
        rows_added += affected

    raise SubsetQueryFailure(
        f"Hierarchy did not close after {max_iterations} passes",
        table=source,
        stage="hierarchy-closure",
    )
