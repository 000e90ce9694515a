from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.orm import Session, selectinload

from marketplace.auth import Principal, require_principal
from marketplace.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from marketplace.models import Order, OrderStatus, Store
from marketplace.observability import increment_counter, record_event
from marketplace.services.approval_service import get_owned_store
from marketplace.services.optimistic import compare_and_swap, optimistic_update


def parse_order_status(value: OrderStatus | str, field_name: str = "status") -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown order status: {value}", field=field_name) from None


class OrderService:
    """
    Order status lifecycle: ORDER_PLACED -> PROCESSING -> SHIPPED -> DELIVERED.

    Only the immediate successor is accepted unless `override` is set, in
    which case any later status is accepted. Moving backwards is never
    allowed. Totals and line prices are snapshots and are never recomputed.
    """

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def set_status(
        self,
        actor: Optional[Principal],
        order_id: int,
        new_status: OrderStatus | str,
        override: bool = False,
        expected_status: Optional[OrderStatus | str] = None,
    ) -> Order:
        actor = require_principal(actor)
        target = parse_order_status(new_status)
        order = self._get_order(order_id)
        self._require_seller_access(actor, order)

        current = OrderStatus(order.status)
        if expected_status is not None:
            expected = parse_order_status(expected_status, "expected_status")
            if expected != current:
                raise ConflictError(
                    f"Order {order_id} is {current.value}, not {expected.value}; reload and retry",
                    current=current.value,
                )
        if target == current:
            return order
        order.ensure_transition(target, override=override)

        optimistic_update(
            self.db,
            order,
            lambda: compare_and_swap(
                self.db,
                Order,
                order.id,
                expected={"status": current},
                values={"status": target},
                entity="order",
            ),
            status=target,
        )
        increment_counter(
            "order_status_transitions_total",
            labels={"status": target.value, "override": str(bool(override)).lower()},
        )
        record_event(
            "order_status_changed",
            {"order_id": order.id, "from": current.value, "to": target.value, "by": actor.user_id},
        )
        self.logger.info(
            "Order %s moved from %s to %s",
            order.id,
            current.value,
            target.value,
            extra={"actor_id": actor.user_id, "override": bool(override)},
        )
        return order

    def list_store_orders(self, actor: Optional[Principal]) -> List[Order]:
        store = get_owned_store(self.db, actor)
        return (
            self.db.query(Order)
            .options(selectinload(Order.items))
            .filter(Order.store_id == store.id)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .all()
        )

    def list_user_orders(self, actor: Optional[Principal]) -> List[Order]:
        actor = require_principal(actor)
        return (
            self.db.query(Order)
            .options(selectinload(Order.items))
            .filter(Order.user_id == actor.user_id)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .all()
        )

    def get_order(self, actor: Optional[Principal], order_id: int) -> Order:
        actor = require_principal(actor)
        order = self._get_order(order_id)
        if order.user_id != actor.user_id:
            self._require_seller_access(actor, order)
        return order

    def _get_order(self, order_id: int) -> Order:
        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFoundError("order", order_id)
        return order

    def _require_seller_access(self, actor: Principal, order: Order) -> None:
        if actor.is_admin:
            return
        store = self.db.get(Store, order.store_id)
        if store is None or not store.is_owned_by(actor.user_id):
            raise AuthorizationError(
                f"Order {order.id} belongs to another store",
                order_id=order.id,
            )
