from .approval_service import ApprovalService, SubmissionResult
from .catalog_service import CatalogService, ProductWriteResult
from .coupon_service import CouponService
from .order_service import OrderService
from .checkout_service import CheckoutService
from .dashboard_service import DashboardService

__all__ = [
    "ApprovalService",
    "SubmissionResult",
    "CatalogService",
    "ProductWriteResult",
    "CouponService",
    "OrderService",
    "CheckoutService",
    "DashboardService",
]
