from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace.auth import Principal, require_principal
from marketplace.config import Config
from marketplace.errors import (
    AuthorizationError,
    ConflictError,
    MarketplaceError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from marketplace.models import Product, Store, StoreStatus
from marketplace.observability import increment_counter, record_event
from marketplace.services.approval_service import get_owned_store
from marketplace.services.optimistic import compare_and_swap, optimistic_update
from marketplace.storage import (
    BlobStorage,
    Upload,
    UploadFailure,
    build_blob_storage,
    discard_uploads,
    timestamp_ms,
    upload_many,
)
from marketplace.validation import clean_text, parse_money


@dataclass
class ProductWriteResult:
    product: Product
    upload_failures: List[UploadFailure] = field(default_factory=list)


class CatalogService:
    """Product CRUD scoped to the owning store, plus the shopper visibility rule."""

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        storage: Optional[BlobStorage] = None,
    ) -> None:
        self.db = db_session
        self.config = config
        self.storage = storage or build_blob_storage(config)
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Seller flows
    # ------------------------------------------------------------------
    def create_product(
        self,
        actor: Optional[Principal],
        fields: Dict[str, Any],
        main_image: Optional[Upload] = None,
        images: Sequence[Upload] = (),
    ) -> ProductWriteResult:
        store = get_owned_store(self.db, actor)
        if not store.is_approved:
            raise AuthorizationError(
                "Your store must be approved before you can add products",
                store_id=store.id,
                status=StoreStatus(store.status).value,
            )

        values = self._validate(fields)
        self._check_image_count(images)
        main_url, image_urls, failures, uploaded = self._upload_images(store.id, main_image, images)

        product = Product(
            store_id=store.id,
            main_image=main_url,
            images=image_urls,
            in_stock=True,
            **values,
        )
        self.db.add(product)
        self._persist("create product", uploaded=uploaded)

        increment_counter("products_created_total")
        record_event("product_created", {"product_id": product.id, "store_id": store.id})
        self.logger.info(
            "Product %s created",
            product.id,
            extra={"store_id": store.id, "upload_failures": len(failures)},
        )
        return ProductWriteResult(product=product, upload_failures=failures)

    def update_product(
        self,
        actor: Optional[Principal],
        product_id: int,
        fields: Dict[str, Any],
        main_image: Optional[Upload] = None,
        images: Sequence[Upload] = (),
        expected_version: Optional[int] = None,
    ) -> ProductWriteResult:
        product = self._get_owned_product(actor, product_id)
        version = product.version
        if expected_version is not None and int(expected_version) != version:
            raise ConflictError(
                f"Product {product_id} was changed by someone else; reload and retry",
                version=version,
            )

        values = self._validate(fields, current=product)
        self._check_image_count(images)
        main_url, image_urls, failures, uploaded = self._upload_images(product.store_id, main_image, images)
        if main_url:
            values["main_image"] = main_url
        if image_urls:
            values["images"] = list(product.images or []) + image_urls

        if values:
            self._persist(
                "update product",
                lambda: compare_and_swap(
                    self.db,
                    Product,
                    product.id,
                    expected={"version": version},
                    values=values,
                    entity="product",
                ),
                uploaded=uploaded,
            )
            self.db.refresh(product)
            self.logger.info("Product %s updated", product.id, extra={"changed": sorted(values)})
        return ProductWriteResult(product=product, upload_failures=failures)

    def delete_product(self, actor: Optional[Principal], product_id: int) -> None:
        product = self._get_owned_product(actor, product_id)
        store_id = product.store_id
        self.db.delete(product)
        self._persist("delete product")
        increment_counter("products_deleted_total")
        self.logger.info("Product %s deleted", product_id, extra={"store_id": store_id})

    def toggle_stock(self, actor: Optional[Principal], product_id: int) -> Product:
        """
        Flip `in_stock` optimistically.

        The local instance shows the new value first; if the conditional write
        fails the prior value is restored and the error propagates.
        """
        product = self._get_owned_product(actor, product_id)
        prior = bool(product.in_stock)
        version = product.version

        optimistic_update(
            self.db,
            product,
            lambda: compare_and_swap(
                self.db,
                Product,
                product.id,
                expected={"in_stock": prior, "version": version},
                values={"in_stock": not prior},
                entity="product",
            ),
            in_stock=not prior,
        )
        increment_counter("stock_toggles_total", labels={"in_stock": str(not prior).lower()})
        self.logger.info("Product %s in_stock set to %s", product.id, not prior)
        return product

    def list_products(self, actor: Optional[Principal]) -> List[Product]:
        store = get_owned_store(self.db, actor)
        return (
            self.db.query(Product)
            .filter(Product.store_id == store.id)
            .order_by(Product.created_at.desc(), Product.id.desc())
            .all()
        )

    # ------------------------------------------------------------------
    # Shopper read paths
    # ------------------------------------------------------------------
    def visible_products_query(self):
        """Products a shopper may see: in stock and owned by an active, approved store."""
        return (
            self.db.query(Product)
            .join(Store, Product.store_id == Store.id)
            .filter(
                Product.in_stock.is_(True),
                Store.is_active.is_(True),
                Store.status == StoreStatus.APPROVED,
            )
        )

    def visible_products(self) -> List[Product]:
        return self.visible_products_query().order_by(Product.created_at.desc(), Product.id.desc()).all()

    def storefront(self, username: str) -> Tuple[Store, List[Product]]:
        key = (username or "").strip().lower()
        store = (
            self.db.query(Store)
            .filter(
                Store.username_key == key,
                Store.is_active.is_(True),
                Store.status == StoreStatus.APPROVED,
            )
            .first()
        )
        if store is None:
            raise NotFoundError("store", username)
        products = (
            self.visible_products_query()
            .filter(Product.store_id == store.id)
            .order_by(Product.created_at.desc(), Product.id.desc())
            .all()
        )
        return store, products

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _get_owned_product(self, actor: Optional[Principal], product_id: int) -> Product:
        actor = require_principal(actor)
        product = self.db.get(Product, product_id)
        if product is None:
            raise NotFoundError("product", product_id)
        if not product.store.is_owned_by(actor.user_id):
            raise AuthorizationError(
                f"Product {product_id} belongs to another store",
                product_id=product_id,
            )
        return product

    def _validate(self, fields: Dict[str, Any], current: Optional[Product] = None) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        partial = current is not None

        if not partial or "name" in fields:
            name = clean_text(fields.get("name"))
            if not name:
                raise ValidationError("Name is required", field="name")
            values["name"] = name
        if "description" in fields:
            values["description"] = clean_text(fields.get("description"))
        for money_field in ("mrp", "price"):
            if not partial or money_field in fields:
                if fields.get(money_field) in (None, ""):
                    raise ValidationError(f"{money_field} is required", field=money_field)
                values[money_field] = parse_money(fields[money_field], money_field)

        mrp = values.get("mrp", current.mrp if partial else None)
        price = values.get("price", current.price if partial else None)
        if (
            self.config.ENFORCE_PRICE_NOT_ABOVE_MRP
            and mrp is not None
            and price is not None
            and Decimal(price) > Decimal(mrp)
        ):
            raise ValidationError("Offer price cannot be higher than the MRP", field="price")
        return values

    def _check_image_count(self, images: Sequence[Upload]) -> None:
        if len(images) > self.config.MAX_PRODUCT_IMAGES:
            raise ValidationError(
                f"At most {self.config.MAX_PRODUCT_IMAGES} additional images are allowed",
                field="images",
            )

    def _upload_images(
        self,
        store_id: int,
        main_image: Optional[Upload],
        images: Sequence[Upload],
    ) -> Tuple[Optional[str], List[str], List[UploadFailure], List[str]]:
        """Upload best-effort; also returns the stored paths so a failed write can discard them."""
        stamp = timestamp_ms()
        bucket = self.config.PRODUCT_BUCKET

        main_url = None
        main_items = []
        main_failures: List[UploadFailure] = []
        if main_image is not None:
            main_items = [("main_image", f"{store_id}/main-{stamp}.{main_image.extension}", main_image)]
            urls, main_failures = upload_many(self.storage, bucket, main_items)
            main_url = urls[0] if urls else None

        image_items = [
            (f"image_{index}", f"{store_id}/{stamp}-{index}.{upload.extension}", upload)
            for index, upload in enumerate(images, start=1)
        ]
        image_urls, image_failures = upload_many(self.storage, bucket, image_items)

        failures = main_failures + image_failures
        failed = {failure.label for failure in failures}
        stored = [path for label, path, _ in main_items + image_items if label not in failed]
        return main_url, image_urls, failures, stored

    def _persist(
        self,
        action: str,
        write: Optional[Callable[[], None]] = None,
        uploaded: Sequence[str] = (),
    ) -> None:
        try:
            if write is not None:
                write()
            self.db.commit()
        except MarketplaceError:
            self.db.rollback()
            discard_uploads(self.storage, self.config.PRODUCT_BUCKET, uploaded)
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            discard_uploads(self.storage, self.config.PRODUCT_BUCKET, uploaded)
            self.logger.error("Could not %s: %s", action, exc)
            raise UpstreamError(f"Could not {action}; please retry") from exc
