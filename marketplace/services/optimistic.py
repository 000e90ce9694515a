"""
Optimistic mutations: apply locally, confirm remotely, compensate on failure.

Every toggle-style write (stock flag, store activation, approval decision,
order status) goes through `optimistic_update`, and the remote confirmation
is a single compare-and-swap UPDATE so two actors can never silently
overwrite each other.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, TypeVar

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from marketplace.errors import ConflictError, MarketplaceError, UpstreamError
from marketplace.observability import increment_counter

T = TypeVar("T")

logger = logging.getLogger(__name__)


class OptimisticMutation:
    """Run `apply`, then `confirm`; if confirmation raises, run `compensate` and re-raise."""

    def __init__(
        self,
        apply: Callable[[], None],
        confirm: Callable[[], T],
        compensate: Callable[[], None],
    ) -> None:
        self.apply = apply
        self.confirm = confirm
        self.compensate = compensate

    def run(self) -> T:
        self.apply()
        try:
            return self.confirm()
        except Exception:
            self.compensate()
            raise


def compare_and_swap(
    session: Session,
    model,
    ident: Any,
    expected: Dict[str, Any],
    values: Dict[str, Any],
    entity: Optional[str] = None,
) -> None:
    """
    Issue one conditional UPDATE keyed by id plus the expected prior values.

    The row's version is bumped with the write. Zero matched rows means
    somebody else changed the row first and raises ConflictError.
    """
    criteria = [model.id == ident]
    for column, value in expected.items():
        attr = getattr(model, column)
        criteria.append(attr.is_(None) if value is None else attr == value)

    stmt = (
        update(model)
        .where(*criteria)
        .values(**values, version=model.version + 1)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    if result.rowcount != 1:
        name = entity or model.__tablename__
        increment_counter("cas_conflicts_total", labels={"entity": name})
        logger.warning(
            "Conditional update on %s %s matched no row",
            name,
            ident,
            extra={"expected": {k: getattr(v, "value", v) for k, v in expected.items()}},
        )
        raise ConflictError(
            f"{name.capitalize()} {ident} was changed by someone else; reload and retry",
            id=ident,
        )


def optimistic_update(
    session: Session,
    instance,
    confirm: Callable[[], None],
    **changes: Any,
):
    """
    Set `changes` on the loaded instance, then run `confirm` and commit.

    The local values are written without marking the instance dirty, so the
    only write that reaches the database is the one `confirm` issues. On any
    failure the transaction is rolled back and the prior values restored.
    """
    previous = {key: getattr(instance, key) for key in changes}

    def apply() -> None:
        for key, value in changes.items():
            set_committed_value(instance, key, value)

    def commit() -> Any:
        try:
            confirm()
            session.commit()
        except MarketplaceError:
            raise
        except SQLAlchemyError as exc:
            raise UpstreamError(f"Could not persist change: {exc.__class__.__name__}") from exc
        return instance

    def compensate() -> None:
        session.rollback()
        for key, value in previous.items():
            set_committed_value(instance, key, value)

    return OptimisticMutation(apply, commit, compensate).run()
