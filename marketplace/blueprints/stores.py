from __future__ import annotations

from flask import Blueprint, jsonify, request

from marketplace.blueprints.common import (
    blob_storage,
    current_principal,
    request_payload,
    serialize_failures,
    serialize_product,
    serialize_store,
    to_upload,
)
from marketplace.database import get_db
from marketplace.services.approval_service import ApprovalService
from marketplace.services.catalog_service import CatalogService

stores_bp = Blueprint("stores", __name__)


def _get_approval_service() -> ApprovalService:
    return ApprovalService(get_db(), storage=blob_storage())


@stores_bp.route("/api/stores", methods=["POST"])
def submit_store():
    result = _get_approval_service().submit(
        current_principal(),
        request_payload(),
        logo=to_upload(request.files.get("logo")),
    )
    return jsonify(
        {
            "message": "Store submitted, waiting for admin approval",
            "store": serialize_store(result.store, include_private=True),
            "upload_failures": serialize_failures(result.upload_failures),
        }
    ), 201


@stores_bp.route("/api/stores/me", methods=["GET"])
def my_store():
    store = _get_approval_service().status_for_owner(current_principal())
    if store is None:
        return jsonify({"status": "not_registered", "store": None})
    return jsonify(
        {
            "status": store.status.value,
            "is_active": bool(store.is_active),
            "store": serialize_store(store, include_private=True),
        }
    )


@stores_bp.route("/api/shop/<username>", methods=["GET"])
def storefront(username: str):
    store, products = CatalogService(get_db(), storage=blob_storage()).storefront(username)
    return jsonify(
        {
            "store": serialize_store(store),
            "products": [serialize_product(product) for product in products],
        }
    )


@stores_bp.route("/api/products", methods=["GET"])
def list_visible_products():
    products = CatalogService(get_db(), storage=blob_storage()).visible_products()
    return jsonify({"products": [serialize_product(product) for product in products]})
