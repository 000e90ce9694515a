from __future__ import annotations

from flask import Blueprint, jsonify

from marketplace.blueprints.common import current_principal, request_payload, serialize_order
from marketplace.database import get_db
from marketplace.errors import ValidationError
from marketplace.services.checkout_service import CheckoutService
from marketplace.services.coupon_service import CouponService
from marketplace.services.order_service import OrderService

orders_bp = Blueprint("orders", __name__)


@orders_bp.route("/api/orders", methods=["GET"])
def list_my_orders():
    orders = OrderService(get_db()).list_user_orders(current_principal())
    return jsonify({"orders": [serialize_order(order) for order in orders]})


@orders_bp.route("/api/orders/<int:order_id>", methods=["GET"])
def get_order(order_id: int):
    order = OrderService(get_db()).get_order(current_principal(), order_id)
    return jsonify({"order": serialize_order(order)})


@orders_bp.route("/api/orders", methods=["POST"])
def place_order():
    payload = request_payload()
    items = payload.get("items")
    if not isinstance(items, list):
        raise ValidationError("items must be a list of {product_id, quantity}", field="items")
    address = payload.get("address")
    if not isinstance(address, dict):
        raise ValidationError("address is required", field="address")

    order = CheckoutService(get_db()).place_order(
        current_principal(),
        payload.get("store_id"),
        items,
        address,
        payload.get("payment_method"),
        coupon_code=payload.get("coupon_code") or None,
    )
    return jsonify({"message": "Order placed successfully", "order": serialize_order(order)}), 201


@orders_bp.route("/api/coupons/<int:store_id>/<code>", methods=["GET"])
def check_coupon(store_id: int, code: str):
    discount = CouponService(get_db()).redeem(store_id, code)
    return jsonify({"code": code.strip().upper(), "store_id": store_id, "discount": discount})
