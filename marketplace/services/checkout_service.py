from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace.auth import Principal, require_principal
from marketplace.config import Config
from marketplace.errors import (
    ConflictError,
    MarketplaceError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from marketplace.models import Order, OrderItem, OrderStatus, PaymentMethod, Product, Store
from marketplace.observability import increment_counter, record_event, timed
from marketplace.services.coupon_service import CouponService
from marketplace.validation import parse_int, quantize_money, require_fields

ADDRESS_FIELDS = ("name", "street", "city", "state", "zip", "country", "phone")
HUNDRED = Decimal("100")


def compute_total(lines: Iterable[tuple], discount: int = 0) -> Decimal:
    """Sum of price * quantity, less a whole-percent discount, rounded half-up to cents."""
    subtotal = sum((Decimal(price) * quantity for price, quantity in lines), Decimal("0"))
    discounted = subtotal * (HUNDRED - Decimal(discount)) / HUNDRED
    return quantize_money(discounted, "total")


def parse_payment_method(value: Any) -> PaymentMethod:
    if isinstance(value, PaymentMethod):
        return value
    try:
        return PaymentMethod(str(value or "").strip().upper())
    except ValueError:
        raise ValidationError(f"Unsupported payment method: {value}", field="payment_method") from None


class CheckoutService:
    """Place an order against one store as a single transaction."""

    def __init__(self, db_session: Session, config: type[Config] = Config) -> None:
        self.db = db_session
        self.config = config
        self.coupons = CouponService(db_session, config)
        self.logger = logging.getLogger(__name__)

    def place_order(
        self,
        actor: Optional[Principal],
        store_id: int,
        items: Iterable[Mapping[str, Any]],
        address: Mapping[str, Any],
        payment_method: PaymentMethod | str,
        coupon_code: Optional[str] = None,
        today: Optional[date] = None,
    ) -> Order:
        actor = require_principal(actor)
        store_id = parse_int(store_id, "store_id")
        method = parse_payment_method(payment_method)
        shipping_address = require_fields(dict(address or {}), ADDRESS_FIELDS)
        quantities = self._parse_items(items, self.config.MAX_LINE_QUANTITY)

        try:
            with timed("checkout_latency_ms"):
                order = self._build_order(actor, store_id, quantities, shipping_address, method, coupon_code, today)
                self.db.add(order)
                self.db.commit()
        except MarketplaceError as exc:
            self.db.rollback()
            increment_counter("orders_rejected_total", labels={"reason": exc.code})
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            self.logger.error("Checkout failed for store %s: %s", store_id, exc)
            raise UpstreamError("Could not place order; please retry") from exc

        increment_counter("orders_placed_total", labels={"payment_method": method.value})
        record_event(
            "order_placed",
            {"order_id": order.id, "store_id": order.store_id, "total": str(order.total)},
        )
        self.logger.info(
            "Order %s placed",
            order.id,
            extra={"store_id": order.store_id, "buyer_id": actor.user_id, "lines": len(quantities)},
        )
        return order

    def _build_order(
        self,
        actor: Principal,
        store_id: int,
        quantities: "OrderedDict[int, int]",
        shipping_address: Dict[str, str],
        method: PaymentMethod,
        coupon_code: Optional[str],
        today: Optional[date],
    ) -> Order:
        store = self.db.get(Store, store_id)
        if store is None:
            raise NotFoundError("store", store_id)
        if not (store.is_active and store.is_approved):
            raise ConflictError(f"Store {store_id} is not accepting orders", store_id=store_id)

        products = {
            product.id: product
            for product in (
                self.db.query(Product)
                .filter(Product.id.in_(list(quantities)), Product.store_id == store.id)
                .with_for_update()
                .all()
            )
        }
        lines: List[OrderItem] = []
        for product_id, quantity in quantities.items():
            product = products.get(product_id)
            if product is None:
                raise NotFoundError("product", product_id)
            if not product.in_stock:
                raise ConflictError(f"{product.name} is out of stock", product_id=product_id)
            lines.append(
                OrderItem(
                    product_id=product.id,
                    product_name=product.name,
                    quantity=quantity,
                    price=Decimal(product.price),
                )
            )

        coupon = None
        if coupon_code not in (None, ""):
            coupon = self.coupons.find_redeemable(store.id, coupon_code, today, lock=True)
        discount = int(coupon.discount) if coupon else 0

        return Order(
            user_id=actor.user_id,
            store_id=store.id,
            coupon_id=coupon.id if coupon else None,
            coupon_code=coupon.code if coupon else None,
            discount=discount,
            total=compute_total(((line.price, line.quantity) for line in lines), discount),
            payment_method=method,
            status=OrderStatus.ORDER_PLACED,
            is_paid=False,
            shipping_address=shipping_address,
            items=lines,
        )

    @staticmethod
    def _parse_items(items: Iterable[Mapping[str, Any]], max_quantity: int) -> "OrderedDict[int, int]":
        quantities: "OrderedDict[int, int]" = OrderedDict()
        for entry in items or ():
            if not isinstance(entry, Mapping):
                raise ValidationError("Each cart line needs a product_id and quantity", field="items")
            product_id = parse_int(entry.get("product_id"), "product_id")
            quantity = parse_int(entry.get("quantity", 1), "quantity")
            if quantity <= 0:
                raise ValidationError("Quantity must be at least 1", field="quantity")
            quantities[product_id] = quantities.get(product_id, 0) + quantity
            if quantities[product_id] > max_quantity:
                raise ValidationError(
                    f"At most {max_quantity} of one product per order",
                    field="quantity",
                    product_id=product_id,
                )
        if not quantities:
            raise ValidationError("Cart is empty", field="items")
        return quantities
