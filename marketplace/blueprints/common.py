"""Request helpers and JSON serializers shared by the API blueprints."""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from flask import current_app, request, session
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from marketplace.auth import Principal
from marketplace.config import Config
from marketplace.models import Coupon, Order, OrderItem, Product, Store
from marketplace.storage import BlobStorage, Upload, UploadFailure, build_blob_storage
from marketplace.validation import parse_int


def current_principal() -> Optional[Principal]:
    return Principal.from_session(session, Config.ADMIN_USER_IDS)


def blob_storage() -> BlobStorage:
    storage = current_app.extensions.get("blob_storage")
    if storage is None:
        storage = build_blob_storage(Config)
        current_app.extensions["blob_storage"] = storage
    return storage


def request_payload() -> Dict[str, Any]:
    """JSON body when present, otherwise the submitted form fields."""
    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        return payload
    return request.form.to_dict()


def as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def optional_int(value: Any, field: str) -> Optional[int]:
    if value in (None, ""):
        return None
    return parse_int(value, field)


def to_upload(file: Optional[FileStorage]) -> Optional[Upload]:
    if file is None or not file.filename:
        return None
    return Upload(
        filename=secure_filename(file.filename) or file.filename,
        content=file.read(),
        content_type=file.mimetype or "application/octet-stream",
    )


def uploads_from(field: str) -> List[Upload]:
    uploads = (to_upload(file) for file in request.files.getlist(field))
    return [upload for upload in uploads if upload is not None]


def _money(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(Decimal(value).quantize(Decimal("0.01")))


def _iso(value: Optional[date | datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _enum(value: Any) -> Any:
    return getattr(value, "value", value)


def serialize_store(store: Store, include_private: bool = False) -> Dict[str, Any]:
    body = {
        "id": store.id,
        "name": store.name,
        "username": store.username,
        "description": store.description,
        "logo": store.logo,
        "email": store.email,
        "contact": store.contact,
        "address": store.address,
        "created_at": _iso(store.created_at),
    }
    if include_private:
        body.update(
            {
                "owner_id": store.owner_id,
                "status": _enum(store.status),
                "is_active": bool(store.is_active),
                "version": store.version,
                "updated_at": _iso(store.updated_at),
            }
        )
    return body


def serialize_product(product: Product) -> Dict[str, Any]:
    return {
        "id": product.id,
        "store_id": product.store_id,
        "name": product.name,
        "description": product.description,
        "mrp": _money(product.mrp),
        "price": _money(product.price),
        "main_image": product.main_image,
        "images": list(product.images or []),
        "in_stock": bool(product.in_stock),
        "version": product.version,
        "created_at": _iso(product.created_at),
    }


def serialize_coupon(coupon: Coupon) -> Dict[str, Any]:
    return {
        "id": coupon.id,
        "store_id": coupon.store_id,
        "code": coupon.code,
        "description": coupon.description,
        "discount": coupon.discount,
        "expires_at": _iso(coupon.expires_at),
        "version": coupon.version,
    }


def serialize_order_item(item: OrderItem) -> Dict[str, Any]:
    return {
        "product_id": item.product_id,
        "product_name": item.product_name,
        "quantity": item.quantity,
        "price": _money(item.price),
    }


def serialize_order(order: Order) -> Dict[str, Any]:
    return {
        "id": order.id,
        "user_id": order.user_id,
        "store_id": order.store_id,
        "status": _enum(order.status),
        "payment_method": _enum(order.payment_method),
        "is_paid": bool(order.is_paid),
        "coupon_code": order.coupon_code,
        "discount": order.discount,
        "total": _money(order.total),
        "shipping_address": dict(order.shipping_address or {}),
        "items": [serialize_order_item(item) for item in order.items],
        "created_at": _iso(order.created_at),
    }


def serialize_failures(failures: List[UploadFailure]) -> List[Dict[str, Any]]:
    return [failure.to_dict() for failure in failures]


def jsonable(value: Any) -> Any:
    """Recursively turn Decimal and date values from service payloads into JSON primitives."""
    if isinstance(value, Decimal):
        return _money(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(item) for item in value]
    return value
