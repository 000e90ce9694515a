from __future__ import annotations

from collections import Counter, defaultdict
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import func
from sqlalchemy.orm import Session

from marketplace.auth import Principal
from marketplace.config import Config
from marketplace.errors import ValidationError
from marketplace.models import Order, Product, Store
from marketplace.services.approval_service import get_owned_store
from marketplace.validation import CENTS

ZERO = Decimal("0.00")


def _local_tz(config: type[Config]):
    try:
        return ZoneInfo(config.DEFAULT_TIMEZONE)
    except ZoneInfoNotFoundError:
        return timezone.utc


def _to_local(value: datetime, tz) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(tz)


class DashboardService:
    """
    Read-only aggregates for the admin and seller dashboards.

    Each figure comes from its own query, so a summary taken while orders are
    being placed may show counts and revenue from slightly different moments.
    """

    def __init__(self, db_session: Session, config: type[Config] = Config) -> None:
        self.db = db_session
        self.config = config
        self.tz = _local_tz(config)

    def count_products(self) -> int:
        return self.db.query(func.count(Product.id)).scalar() or 0

    def count_stores(self) -> int:
        return self.db.query(func.count(Store.id)).scalar() or 0

    def orders(self) -> List[Dict[str, Any]]:
        rows = (
            self.db.query(Order.id, Order.total, Order.created_at)
            .order_by(Order.created_at.asc(), Order.id.asc())
            .all()
        )
        return [{"id": row.id, "total": Decimal(row.total), "created_at": row.created_at} for row in rows]

    def total_revenue(self, store_id: Optional[int] = None) -> Decimal:
        # Summed in Python so SQLite's float arithmetic never touches money
        query = self.db.query(Order.total)
        if store_id is not None:
            query = query.filter(Order.store_id == store_id)
        total = sum((Decimal(row.total) for row in query.all()), ZERO)
        return total.quantize(CENTS)

    def orders_series(self, start: date, end: date, store_id: Optional[int] = None) -> Dict[str, Any]:
        """Daily order count and revenue for every local day from `start` to `end` inclusive."""
        window_start = datetime(start.year, start.month, start.day, tzinfo=self.tz).astimezone(timezone.utc)
        window_end = (
            datetime(end.year, end.month, end.day, tzinfo=self.tz) + timedelta(days=1)
        ).astimezone(timezone.utc)

        query = self.db.query(Order.total, Order.created_at).filter(
            Order.created_at >= window_start.replace(tzinfo=None),
            Order.created_at < window_end.replace(tzinfo=None),
        )
        if store_id is not None:
            query = query.filter(Order.store_id == store_id)

        counts: Counter = Counter()
        revenue: Dict[date, Decimal] = defaultdict(lambda: ZERO)
        for row in query.all():
            if row.created_at is None:
                continue
            day_key = _to_local(row.created_at, self.tz).date()
            counts[day_key] += 1
            revenue[day_key] += Decimal(row.total)

        series: List[Dict[str, Any]] = []
        day = start
        while day <= end:
            series.append(
                {
                    "date": day.isoformat(),
                    "count": counts.get(day, 0),
                    "revenue": revenue[day].quantize(CENTS) if day in revenue else ZERO,
                }
            )
            day += timedelta(days=1)

        total = sum(point["count"] for point in series)
        return {
            "total": total,
            "series": series,
            "series_max": max((point["count"] for point in series), default=0),
            "mean_per_day": total / len(series) if series else 0.0,
        }

    def summary(self, now: Optional[datetime] = None, days: Optional[int] = None) -> Dict[str, Any]:
        days = self._series_days(days)
        today = _to_local(now or datetime.now(timezone.utc), self.tz).date()
        start = today - timedelta(days=days - 1)
        orders = self.orders()
        return {
            "products": self.count_products(),
            "stores": self.count_stores(),
            "orders": len(orders),
            "revenue": self.total_revenue(),
            "all_orders": orders,
            "series": self.orders_series(start, today),
        }

    def _series_days(self, days: Optional[int]) -> int:
        if days is None:
            return self.config.DASHBOARD_SERIES_DAYS
        maximum = self.config.DASHBOARD_MAX_DAYS
        if not 1 <= days <= maximum:
            raise ValidationError(f"days must be between 1 and {maximum}", field="days", maximum=maximum)
        return days

    def store_summary(self, actor: Optional[Principal]) -> Dict[str, Any]:
        store = get_owned_store(self.db, actor)
        product_count = (
            self.db.query(func.count(Product.id)).filter(Product.store_id == store.id).scalar() or 0
        )
        order_count = self.db.query(func.count(Order.id)).filter(Order.store_id == store.id).scalar() or 0
        return {
            "store_id": store.id,
            "products": product_count,
            "orders": order_count,
            "earnings": self.total_revenue(store_id=store.id),
        }
