from __future__ import annotations

from flask import Blueprint, jsonify, request

from marketplace.blueprints.common import (
    as_bool,
    blob_storage,
    current_principal,
    jsonable,
    optional_int,
    request_payload,
    serialize_coupon,
    serialize_failures,
    serialize_order,
    serialize_product,
    to_upload,
    uploads_from,
)
from marketplace.database import get_db
from marketplace.services.catalog_service import CatalogService
from marketplace.services.coupon_service import CouponService
from marketplace.services.dashboard_service import DashboardService
from marketplace.services.order_service import OrderService

seller_bp = Blueprint("seller", __name__, url_prefix="/api/store")

_PRODUCT_FIELDS = ("name", "description", "mrp", "price")
_COUPON_FIELDS = ("code", "discount", "expires_at", "description")


def _get_catalog_service() -> CatalogService:
    return CatalogService(get_db(), storage=blob_storage())


def _pick(payload, names):
    return {name: payload[name] for name in names if name in payload}


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------
@seller_bp.route("/products", methods=["GET"])
def list_products():
    products = _get_catalog_service().list_products(current_principal())
    return jsonify({"products": [serialize_product(product) for product in products]})


@seller_bp.route("/products", methods=["POST"])
def create_product():
    payload = request_payload()
    result = _get_catalog_service().create_product(
        current_principal(),
        _pick(payload, _PRODUCT_FIELDS),
        main_image=to_upload(request.files.get("main_image")),
        images=uploads_from("images"),
    )
    return jsonify(
        {
            "message": "Product added successfully",
            "product": serialize_product(result.product),
            "upload_failures": serialize_failures(result.upload_failures),
        }
    ), 201


@seller_bp.route("/products/<int:product_id>", methods=["PATCH"])
def update_product(product_id: int):
    payload = request_payload()
    result = _get_catalog_service().update_product(
        current_principal(),
        product_id,
        _pick(payload, _PRODUCT_FIELDS),
        main_image=to_upload(request.files.get("main_image")),
        images=uploads_from("images"),
        expected_version=optional_int(payload.get("version"), "version"),
    )
    return jsonify(
        {
            "product": serialize_product(result.product),
            "upload_failures": serialize_failures(result.upload_failures),
        }
    )


@seller_bp.route("/products/<int:product_id>", methods=["DELETE"])
def delete_product(product_id: int):
    _get_catalog_service().delete_product(current_principal(), product_id)
    return jsonify({"message": "Product deleted"})


@seller_bp.route("/products/<int:product_id>/stock", methods=["POST"])
def toggle_stock(product_id: int):
    product = _get_catalog_service().toggle_stock(current_principal(), product_id)
    return jsonify({"message": "Product stock updated successfully", "product": serialize_product(product)})


# ---------------------------------------------------------------------------
# Coupons
# ---------------------------------------------------------------------------
@seller_bp.route("/coupons", methods=["GET"])
def list_coupons():
    coupons = CouponService(get_db()).list_coupons(current_principal())
    return jsonify({"coupons": [serialize_coupon(coupon) for coupon in coupons]})


@seller_bp.route("/coupons", methods=["POST"])
def add_coupon():
    payload = request_payload()
    coupon = CouponService(get_db()).add_coupon(
        current_principal(),
        payload.get("code"),
        payload.get("discount"),
        payload.get("expires_at"),
        description=payload.get("description"),
    )
    return jsonify({"message": "Coupon added successfully", "coupon": serialize_coupon(coupon)}), 201


@seller_bp.route("/coupons/<int:coupon_id>", methods=["PATCH"])
def edit_coupon(coupon_id: int):
    payload = request_payload()
    coupon = CouponService(get_db()).edit_coupon(
        current_principal(),
        coupon_id,
        _pick(payload, _COUPON_FIELDS),
        expected_version=optional_int(payload.get("version"), "version"),
    )
    return jsonify({"coupon": serialize_coupon(coupon)})


@seller_bp.route("/coupons/<int:coupon_id>", methods=["DELETE"])
def delete_coupon(coupon_id: int):
    CouponService(get_db()).delete_coupon(current_principal(), coupon_id)
    return jsonify({"message": "Coupon deleted"})


# ---------------------------------------------------------------------------
# Orders and dashboard
# ---------------------------------------------------------------------------
@seller_bp.route("/orders", methods=["GET"])
def list_store_orders():
    orders = OrderService(get_db()).list_store_orders(current_principal())
    return jsonify({"orders": [serialize_order(order) for order in orders]})


@seller_bp.route("/orders/<int:order_id>/status", methods=["POST"])
def set_order_status(order_id: int):
    payload = request_payload()
    order = OrderService(get_db()).set_status(
        current_principal(),
        order_id,
        payload.get("status") or "",
        override=as_bool(payload.get("override", False)),
        expected_status=payload.get("expected_status") or None,
    )
    return jsonify({"message": "Order status updated", "order": serialize_order(order)})


@seller_bp.route("/dashboard", methods=["GET"])
def store_dashboard():
    summary = DashboardService(get_db()).store_summary(current_principal())
    return jsonify({"dashboard": jsonable(summary)})
