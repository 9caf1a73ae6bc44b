"""
数据模型 / 类型定义，供各模块引用。
使用 dataclass 保持轻量，不引入 ORM。
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional


# 卖家推进的履约状态，按先后顺序排列；completed 只能由托管释放写入
ORDER_STATUS_FLOW = ("pending", "processing", "shipped", "out_for_delivery", "delivered")
ORDER_STATUS_COMPLETED = "completed"


@dataclass
class WalletTransaction:
    id: int
    user_id: str
    type: str
    amount: Decimal
    balance_after: Decimal
    order_id: Optional[int] = None
    reference: Optional[str] = None
    note: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class Store:
    id: int
    owner_id: str
    name: str
    commission_rate: Optional[Decimal] = None
    created_at: Optional[datetime] = None


@dataclass
class Product:
    id: int
    owner_id: str
    name: str
    price: Decimal
    stock_quantity: int
    store_id: Optional[int] = None
    discount: Decimal = Decimal("0")
    commission_rate: Optional[Decimal] = None
    deposit_percent: Optional[Decimal] = None
    delivery_fee: Decimal = Decimal("0")
    installment_plan: Optional[dict] = None
    active: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class DepositPolicy:
    """下单定金策略：fixed_amount 优先，其次 percent，均为空时使用商品/平台默认值。"""
    percent: Optional[Decimal] = None
    fixed_amount: Optional[Decimal] = None


@dataclass
class Order:
    id: int
    buyer_id: str
    seller_id: str
    product_id: int
    unit_price: Decimal
    total_price: Decimal
    deposit_amount: Decimal
    balance_due: Decimal
    commission_rate: Decimal
    store_id: Optional[int] = None
    quantity: int = 1
    variant: Optional[str] = None
    delivery_fee: Decimal = Decimal("0")
    status: str = "pending"
    delivered: bool = False
    balance_paid: bool = False
    escrow_released: bool = False
    seller_credit: Optional[Decimal] = None
    commission_amount: Optional[Decimal] = None
    delivery_method: Optional[str] = None
    delivery_location: Optional[str] = None
    contact_phone: Optional[str] = None
    payment_method: str = "wallet"
    rating: Optional[int] = None
    rating_submitted: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    balance_paid_at: Optional[datetime] = None
    escrow_released_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        """对外输出的订单字段（不含 OTP），金额统一格式化为两位小数字符串。"""
        return {
            "id": self.id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "store_id": self.store_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "variant": self.variant,
            "unit_price": f"{self.unit_price:.2f}",
            "delivery_fee": f"{self.delivery_fee:.2f}",
            "total_price": f"{self.total_price:.2f}",
            "deposit_amount": f"{self.deposit_amount:.2f}",
            "balance_due": f"{self.balance_due:.2f}",
            "commission_rate": str(self.commission_rate),
            "status": self.status,
            "delivered": self.delivered,
            "balance_paid": self.balance_paid,
            "escrow_released": self.escrow_released,
            "seller_credit": f"{self.seller_credit:.2f}" if self.seller_credit is not None else None,
            "commission_amount": (
                f"{self.commission_amount:.2f}" if self.commission_amount is not None else None
            ),
            "delivery_method": self.delivery_method,
            "delivery_location": self.delivery_location,
            "payment_method": self.payment_method,
            "rating": self.rating,
            "rating_submitted": self.rating_submitted,
            "created_at": self.created_at,
            "delivered_at": self.delivered_at,
            "balance_paid_at": self.balance_paid_at,
            "escrow_released_at": self.escrow_released_at,
        }


@dataclass
class EscrowRelease:
    """托管释放结果。released=False 且 already_released=True 表示重复调用的空操作。"""
    order_id: int
    released: bool
    already_released: bool = False
    seller_id: Optional[str] = None
    seller_credit: Decimal = Decimal("0")
    commission: Decimal = Decimal("0")

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "released": self.released,
            "already_released": self.already_released,
            "seller_credit": f"{self.seller_credit:.2f}",
            "commission": f"{self.commission:.2f}",
        }


@dataclass
class InstallmentPayment:
    id: int
    order_id: int
    buyer_id: str
    seq: int
    amount: Decimal
    due_date: str
    status: str = "pending"
    paid_at: Optional[datetime] = None


@dataclass
class InstallmentOrder:
    id: int
    buyer_id: str
    seller_id: str
    product_id: int
    total_price: Decimal
    initial_amount: Decimal
    amount_paid: Decimal
    installment_amount: Decimal
    installments_total: int
    interval_days: int
    commission_rate: Decimal
    installments_paid: int = 0
    store_id: Optional[int] = None
    quantity: int = 1
    variant: Optional[str] = None
    next_due_date: Optional[str] = None
    status: str = "active"
    escrow_released: bool = False
    payments: list[InstallmentPayment] = field(default_factory=list)
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "total_price": f"{self.total_price:.2f}",
            "initial_amount": f"{self.initial_amount:.2f}",
            "amount_paid": f"{self.amount_paid:.2f}",
            "remaining": f"{self.total_price - self.amount_paid:.2f}",
            "installment_amount": f"{self.installment_amount:.2f}",
            "installments_total": self.installments_total,
            "installments_paid": self.installments_paid,
            "interval_days": self.interval_days,
            "next_due_date": self.next_due_date,
            "status": self.status,
            "escrow_released": self.escrow_released,
            "payments": [
                {
                    "id": p.id,
                    "seq": p.seq,
                    "amount": f"{p.amount:.2f}",
                    "due_date": p.due_date,
                    "status": p.status,
                    "paid_at": p.paid_at,
                }
                for p in self.payments
            ],
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }


@dataclass
class Subscription:
    id: int
    user_id: str
    plan_name: str
    amount: Decimal
    starts_at: str
    expires_at: str
    created_at: Optional[datetime] = None


@dataclass
class Notification:
    id: int
    user_id: str
    title: str
    message: str
    is_read: int = 0
    push_status: int = 0
    push_attempts: int = 0
    created_at: Optional[datetime] = None
