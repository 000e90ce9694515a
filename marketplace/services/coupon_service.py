from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace.auth import Principal, require_principal
from marketplace.config import Config
from marketplace.errors import (
    AuthorizationError,
    ConflictError,
    ExpiredError,
    MarketplaceError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from marketplace.models import Coupon
from marketplace.observability import increment_counter, record_event
from marketplace.services.approval_service import get_owned_store
from marketplace.services.optimistic import compare_and_swap
from marketplace.validation import clean_text, parse_date, parse_int

MIN_DISCOUNT = 1
MAX_DISCOUNT = 100


def local_today(config: type[Config] = Config) -> date:
    try:
        tz = ZoneInfo(config.DEFAULT_TIMEZONE)
    except ZoneInfoNotFoundError:
        tz = timezone.utc
    return datetime.now(tz).date()


def normalize_code(code: Any) -> str:
    normalized = (clean_text(code) or "").upper()
    if not normalized:
        raise ValidationError("Coupon code is required", field="code")
    if len(normalized) > 64 or any(ch.isspace() for ch in normalized):
        raise ValidationError("Coupon code must be a single word of at most 64 characters", field="code")
    return normalized


class CouponService:
    """Per-store coupon codes: case-insensitive identity, discount range, expiry."""

    def __init__(self, db_session: Session, config: type[Config] = Config) -> None:
        self.db = db_session
        self.config = config
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Seller flows
    # ------------------------------------------------------------------
    def add_coupon(
        self,
        actor: Optional[Principal],
        code: Any,
        discount: Any,
        expires_at: Any,
        description: Optional[str] = None,
        today: Optional[date] = None,
    ) -> Coupon:
        store = get_owned_store(self.db, actor)
        normalized = normalize_code(code)
        discount_value = self._validate_discount(discount)
        expiry = self._validate_expiry(expires_at, today)

        if self._code_in_use(store.id, normalized):
            raise ConflictError("Coupon code already exists", code=normalized)

        coupon = Coupon(
            store_id=store.id,
            code=normalized,
            description=clean_text(description),
            discount=discount_value,
            expires_at=expiry,
        )
        self.db.add(coupon)
        self._persist("add coupon", normalized)

        increment_counter("coupons_created_total")
        self.logger.info("Coupon %s added", normalized, extra={"store_id": store.id})
        return coupon

    def edit_coupon(
        self,
        actor: Optional[Principal],
        coupon_id: int,
        fields: Dict[str, Any],
        expected_version: Optional[int] = None,
        today: Optional[date] = None,
    ) -> Coupon:
        coupon = self._get_owned_coupon(actor, coupon_id)
        version = coupon.version
        if expected_version is not None and int(expected_version) != version:
            raise ConflictError(
                f"Coupon {coupon_id} was changed by someone else; reload and retry",
                version=version,
            )

        values: Dict[str, Any] = {}
        if "code" in fields:
            normalized = normalize_code(fields["code"])
            if normalized != coupon.code and self._code_in_use(coupon.store_id, normalized, exclude_id=coupon.id):
                raise ConflictError("Coupon code already exists", code=normalized)
            values["code"] = normalized
        if "discount" in fields:
            values["discount"] = self._validate_discount(fields["discount"])
        if "expires_at" in fields:
            values["expires_at"] = self._validate_expiry(fields["expires_at"], today)
        if "description" in fields:
            values["description"] = clean_text(fields["description"])

        if values:
            self._persist(
                "edit coupon",
                values.get("code", coupon.code),
                lambda: compare_and_swap(
                    self.db,
                    Coupon,
                    coupon.id,
                    expected={"version": version},
                    values=values,
                    entity="coupon",
                ),
            )
            self.db.refresh(coupon)
            self.logger.info("Coupon %s updated", coupon.id, extra={"changed": sorted(values)})
        return coupon

    def delete_coupon(self, actor: Optional[Principal], coupon_id: int) -> None:
        coupon = self._get_owned_coupon(actor, coupon_id)
        code = coupon.code
        self.db.delete(coupon)
        self._persist("delete coupon", code)
        self.logger.info("Coupon %s deleted", code, extra={"coupon_id": coupon_id})

    def list_coupons(self, actor: Optional[Principal]) -> List[Coupon]:
        store = get_owned_store(self.db, actor)
        return (
            self.db.query(Coupon)
            .filter(Coupon.store_id == store.id)
            .order_by(Coupon.created_at.desc(), Coupon.id.desc())
            .all()
        )

    # ------------------------------------------------------------------
    # Redemption
    # ------------------------------------------------------------------
    def find_redeemable(
        self,
        store_id: int,
        code: Any,
        today: Optional[date] = None,
        lock: bool = False,
    ) -> Coupon:
        normalized = normalize_code(code)
        query = self.db.query(Coupon).filter(Coupon.store_id == store_id, Coupon.code == normalized)
        if lock:
            query = query.with_for_update()
        coupon = query.first()
        if coupon is None:
            increment_counter("coupon_redemptions_rejected_total", labels={"reason": "not_found"})
            raise NotFoundError("coupon", normalized)
        today = today or local_today(self.config)
        if coupon.is_expired(today):
            increment_counter("coupon_redemptions_rejected_total", labels={"reason": "expired"})
            raise ExpiredError(
                f"Coupon {normalized} expired on {coupon.expires_at.isoformat()}",
                code=normalized,
                expires_at=coupon.expires_at.isoformat(),
            )
        return coupon

    def redeem(self, store_id: int, code: Any, today: Optional[date] = None) -> int:
        """
        Validate a code for a store and return its discount percent.

        Coupons are multi-use: redeeming does not consume or mark the coupon.
        A coupon whose expiry date is today is still accepted.
        """
        coupon = self.find_redeemable(store_id, code, today)
        increment_counter("coupon_redemptions_total")
        record_event("coupon_redeemed", {"store_id": store_id, "code": coupon.code})
        return int(coupon.discount)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _get_owned_coupon(self, actor: Optional[Principal], coupon_id: int) -> Coupon:
        actor = require_principal(actor)
        coupon = self.db.get(Coupon, coupon_id)
        if coupon is None:
            raise NotFoundError("coupon", coupon_id)
        if not coupon.store.is_owned_by(actor.user_id):
            raise AuthorizationError(f"Coupon {coupon_id} belongs to another store", coupon_id=coupon_id)
        return coupon

    def _code_in_use(self, store_id: int, code: str, exclude_id: Optional[int] = None) -> bool:
        query = self.db.query(Coupon.id).filter(Coupon.store_id == store_id, Coupon.code == code)
        if exclude_id is not None:
            query = query.filter(Coupon.id != exclude_id)
        return query.first() is not None

    @staticmethod
    def _validate_discount(value: Any) -> int:
        discount = parse_int(value, "discount")
        if not MIN_DISCOUNT <= discount <= MAX_DISCOUNT:
            raise ValidationError(
                f"Discount must be between {MIN_DISCOUNT} and {MAX_DISCOUNT} percent",
                field="discount",
            )
        return discount

    def _validate_expiry(self, value: Any, today: Optional[date]) -> date:
        expiry = parse_date(value, "expires_at")
        if expiry < (today or local_today(self.config)):
            raise ValidationError("Expiry date cannot be in the past", field="expires_at")
        return expiry

    def _persist(self, action: str, code: str, write=None) -> None:
        try:
            if write is not None:
                write()
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise ConflictError("Coupon code already exists", code=code) from exc
        except MarketplaceError:
            self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            self.logger.error("Could not %s: %s", action, exc)
            raise UpstreamError(f"Could not {action}; please retry") from exc
