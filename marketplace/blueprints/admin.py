from __future__ import annotations

from flask import Blueprint, jsonify, request

from marketplace.auth import require_admin
from marketplace.blueprints.common import (
    as_bool,
    blob_storage,
    current_principal,
    jsonable,
    optional_int,
    request_payload,
    serialize_store,
)
from marketplace.database import get_db
from marketplace.services.approval_service import ApprovalService
from marketplace.services.dashboard_service import DashboardService

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


def _get_approval_service() -> ApprovalService:
    return ApprovalService(get_db(), storage=blob_storage())


@admin_bp.route("/stores", methods=["GET"])
def list_stores():
    stores = _get_approval_service().list_stores(current_principal())
    return jsonify({"stores": [serialize_store(store, include_private=True) for store in stores]})


@admin_bp.route("/stores/pending", methods=["GET"])
def pending_stores():
    stores = _get_approval_service().pending_stores(current_principal())
    return jsonify({"stores": [serialize_store(store, include_private=True) for store in stores]})


@admin_bp.route("/stores/<int:store_id>/decision", methods=["POST"])
def decide_store(store_id: int):
    payload = request_payload()
    store = _get_approval_service().decide(
        current_principal(),
        store_id,
        payload.get("decision") or payload.get("status") or "",
        expected_status=payload.get("expected_status") or None,
    )
    return jsonify({"message": f"Store {store.status.value}", "store": serialize_store(store, include_private=True)})


@admin_bp.route("/stores/<int:store_id>/active", methods=["POST"])
def set_store_active(store_id: int):
    payload = request_payload()
    service = _get_approval_service()
    if "active" in payload:
        store = service.set_active(current_principal(), store_id, as_bool(payload["active"]))
    else:
        store = service.toggle_active(current_principal(), store_id)
    return jsonify({"message": "Store status updated", "store": serialize_store(store, include_private=True)})


@admin_bp.route("/dashboard", methods=["GET"])
def dashboard():
    require_admin(current_principal())
    days = optional_int(request.args.get("days"), "days")
    summary = DashboardService(get_db()).summary(days=days)
    return jsonify({"dashboard": jsonable(summary)})
