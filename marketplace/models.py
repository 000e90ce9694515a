from enum import Enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Column,
    Integer,
    String,
    Numeric,
    Date,
    DateTime,
    ForeignKey,
    Boolean,
    Text,
    UniqueConstraint,
    Index,
    Enum as SAEnum,
    inspect,
)
from sqlalchemy.orm import relationship, validates

from marketplace.database import Base
from marketplace.errors import InvalidTransitionError, ValidationError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StoreStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class OrderStatus(str, Enum):
    ORDER_PLACED = "ORDER_PLACED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"


class PaymentMethod(str, Enum):
    COD = "COD"
    STRIPE = "STRIPE"


ORDER_STATUS_SEQUENCE = (
    OrderStatus.ORDER_PLACED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)


def _is_persistent(instance) -> bool:
    return inspect(instance).has_identity


class Store(Base):
    __tablename__ = 'stores'

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(255), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    username = Column(String(100), nullable=False)
    username_key = Column(String(100), unique=True, nullable=False)
    description = Column(Text)
    email = Column(String(255), nullable=False)
    contact = Column(String(50), nullable=False)
    address = Column(Text, nullable=False)
    logo = Column(String(512))
    status = Column(
        SAEnum(StoreStatus, name="store_status", native_enum=False, validate_strings=True),
        default=StoreStatus.PENDING,
        nullable=False,
    )
    is_active = Column(Boolean, default=False, nullable=False)
    version = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    products = relationship("Product", back_populates="store", cascade="all, delete-orphan")
    coupons = relationship("Coupon", back_populates="store", cascade="all, delete-orphan")

    @validates("owner_id")
    def _owner_is_immutable(self, key, value):
        if _is_persistent(self) and value != self.owner_id:
            raise ValidationError("Store owner cannot be changed", field=key)
        return value

    @property
    def is_approved(self) -> bool:
        return StoreStatus(self.status) == StoreStatus.APPROVED

    def is_owned_by(self, user_id: str) -> bool:
        return self.owner_id == user_id


class Product(Base):
    __tablename__ = 'products'

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_id = Column(Integer, ForeignKey('stores.id', ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    mrp = Column(Numeric(10, 2), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    main_image = Column(String(512))
    images = Column(JSON, default=list, nullable=False)
    in_stock = Column(Boolean, default=True, nullable=False)
    version = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    store = relationship("Store", back_populates="products")


class Coupon(Base):
    __tablename__ = 'coupons'
    __table_args__ = (
        UniqueConstraint("store_id", "code", name="uq_coupons_store_code"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_id = Column(Integer, ForeignKey('stores.id', ondelete="CASCADE"), nullable=False, index=True)
    code = Column(String(64), nullable=False)
    description = Column(Text)
    discount = Column(Integer, nullable=False)
    expires_at = Column(Date, nullable=False)
    version = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    store = relationship("Store", back_populates="coupons")

    def is_expired(self, today) -> bool:
        return self.expires_at < today


class Order(Base):
    __tablename__ = 'orders'
    __table_args__ = (
        Index("ix_orders_store_created", "store_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    # Identifiers only: an order outlives the store, coupon and products it points at
    user_id = Column(String(255), nullable=False, index=True)
    store_id = Column(Integer, nullable=False)
    coupon_id = Column(Integer)
    coupon_code = Column(String(64))
    discount = Column(Integer, default=0, nullable=False)
    total = Column(Numeric(10, 2), nullable=False)
    payment_method = Column(
        SAEnum(PaymentMethod, name="payment_method", native_enum=False, validate_strings=True),
        nullable=False,
    )
    status = Column(
        SAEnum(OrderStatus, name="order_status", native_enum=False, validate_strings=True),
        default=OrderStatus.ORDER_PLACED,
        nullable=False,
    )
    is_paid = Column(Boolean, default=False, nullable=False)
    shipping_address = Column(JSON, nullable=False)
    version = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )

    @validates("total", "discount", "shipping_address")
    def _snapshot_is_frozen(self, key, value):
        if _is_persistent(self):
            raise ValidationError(f"Order {key} is a snapshot and cannot change", field=key)
        return value

    @staticmethod
    def can_transition(current: OrderStatus, new_status: OrderStatus, override: bool = False) -> bool:
        current_index = ORDER_STATUS_SEQUENCE.index(OrderStatus(current))
        new_index = ORDER_STATUS_SEQUENCE.index(OrderStatus(new_status))
        if override:
            return new_index > current_index
        return new_index == current_index + 1

    def ensure_transition(self, new_status: OrderStatus, override: bool = False) -> None:
        if not self.can_transition(self.status, new_status, override):
            raise InvalidTransitionError("order", self.status, new_status)

    def calculate_subtotal(self) -> Decimal:
        return sum((item.line_total for item in self.items), Decimal("0.00"))


class OrderItem(Base):
    __tablename__ = 'order_items'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id', ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, nullable=False)
    product_name = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")

    @validates("quantity", "price", "product_id")
    def _line_is_frozen(self, key, value):
        if _is_persistent(self):
            raise ValidationError(f"Order item {key} is a snapshot and cannot change", field=key)
        return value

    @property
    def line_total(self) -> Decimal:
        return Decimal(self.price) * self.quantity
