"""尾款支付服务（pay_remaining_balance）：从买家钱包一次性付清订单尾款。"""

import logging
from datetime import datetime

from omniflow.database import transaction
from omniflow.models.schemas import Order
from omniflow.services.errors import ForbiddenError, OrderStateError
from omniflow.services.order_service import fetch_order_row, row_to_order
from omniflow.services.wallet_service import WalletService, to_amount

logger = logging.getLogger(__name__)


class SettlementService:
    """尾款结算。不支持部分支付。"""

    def __init__(self):
        self.wallets = WalletService()

    def pay_remaining_balance(self, order_id: int, buyer_id: str) -> Order:
        """
        原子操作：扣买家钱包 balance_due → balance_paid = 1 → balance_due = 0。

        付款成功后调用方应尝试托管释放（若已确认收货）。

        Raises:
            OrderNotFoundError: 订单不存在。
            ForbiddenError: 不是该订单的买家。
            OrderStateError: 尾款已付清或无尾款。
            InsufficientFundsError: 余额不足，订单和钱包均不变。
        """
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        with transaction() as db:
            row = fetch_order_row(db, order_id)
            if row["buyer_id"] != buyer_id:
                raise ForbiddenError("只有买家可以支付尾款")
            balance_due = to_amount(row["balance_due"])
            if row["balance_paid"] or balance_due <= 0:
                raise OrderStateError("该订单没有待付尾款")

            self.wallets.adjust_balance(
                buyer_id, -balance_due, "balance_payment",
                order_id=order_id, note=f"订单 #{order_id} 尾款", conn=db,
            )
            cursor = db.execute(
                """UPDATE orders
                   SET balance_paid = 1, balance_due = 0, balance_paid_at = ?, updated_at = ?
                   WHERE id = ? AND balance_paid = 0""",
                (now, now, order_id),
            )
            if cursor.rowcount == 0:
                raise OrderStateError("该订单没有待付尾款")
            row = fetch_order_row(db, order_id)

        logger.info(
            "尾款支付成功: order_id=%d, buyer_id=%s, amount=%s",
            order_id, buyer_id, balance_due,
        )
        return row_to_order(row)
