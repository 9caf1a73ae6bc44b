"""
托管释放服务（release_escrow_to_seller）。

释放条件：delivered = 1 且 balance_paid = 1 且 escrow_released = 0。
在写事务内以条件 UPDATE（WHERE escrow_released = 0）做比较并交换，
只有 rowcount == 1 的调用会给卖家和平台入账；重复或并发调用为空操作。
"""

import logging
import sqlite3
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from omniflow.database import get_db, transaction
from omniflow.models.schemas import ORDER_STATUS_COMPLETED, EscrowRelease
from omniflow.services.errors import AlreadyReleasedError, EscrowNotReadyError, PaymentFlowError
from omniflow.services.notification_service import NotificationService
from omniflow.services.order_service import fetch_order_row
from omniflow.services.platform_config import platform_wallet_user_id
from omniflow.services.wallet_service import CENT, WalletService, to_amount

logger = logging.getLogger(__name__)


def split_commission(total: Decimal, rate: Decimal) -> tuple[Decimal, Decimal]:
    """返回 (seller_credit, commission)，两者之和恰为 total。"""
    commission = (total * rate).quantize(CENT, rounding=ROUND_HALF_UP)
    return total - commission, commission


def pay_out(
    conn: sqlite3.Connection,
    seller_id: str,
    total: Decimal,
    rate: Decimal,
    order_id: int | None,
    label: str,
    reference: str | None = None,
) -> tuple[Decimal, Decimal]:
    """在调用方事务内给卖家入账 total - 佣金，给平台钱包入账佣金。"""
    wallets = WalletService()
    seller_credit, commission = split_commission(total, rate)
    if seller_credit > 0:
        wallets.adjust_balance(
            seller_id, seller_credit, "escrow_release",
            order_id=order_id, reference=reference,
            note=f"{label} 托管释放", conn=conn,
        )
    if commission > 0:
        wallets.adjust_balance(
            platform_wallet_user_id(), commission, "commission",
            order_id=order_id, reference=reference,
            note=f"{label} 平台佣金", conn=conn,
        )
    return seller_credit, commission


class EscrowService:
    """托管释放引擎。"""

    def __init__(self):
        self.notifications = NotificationService()

    def release_escrow_to_seller(self, order_id: int, strict: bool = False) -> EscrowRelease:
        """
        释放托管资金给卖家（扣除快照佣金），平台钱包收取佣金，订单进入 completed。

        Args:
            order_id: 订单 ID。
            strict: True 时对已释放订单抛出 AlreadyReleasedError，
                默认返回 already_released=True 的空操作结果。

        Raises:
            OrderNotFoundError: 订单不存在。
            EscrowNotReadyError: 未确认收货或尾款未付清。
            AlreadyReleasedError: strict=True 且已释放。
        """
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        with transaction() as db:
            row = fetch_order_row(db, order_id)
            if row["escrow_released"]:
                if strict:
                    raise AlreadyReleasedError("该订单托管资金已释放")
                return EscrowRelease(
                    order_id=order_id,
                    released=False,
                    already_released=True,
                    seller_id=row["seller_id"],
                )
            if not row["delivered"] or not row["balance_paid"]:
                raise EscrowNotReadyError("买家尚未确认收货或尾款未付清")

            cursor = db.execute(
                """UPDATE orders
                   SET escrow_released = 1, status = ?, escrow_released_at = ?, updated_at = ?
                   WHERE id = ? AND escrow_released = 0
                     AND delivered = 1 AND balance_paid = 1""",
                (ORDER_STATUS_COMPLETED, now, now, order_id),
            )
            if cursor.rowcount == 0:
                return EscrowRelease(
                    order_id=order_id,
                    released=False,
                    already_released=True,
                    seller_id=row["seller_id"],
                )

            total = to_amount(row["total_price"])
            rate = Decimal(str(row["commission_rate"]))
            seller_credit, commission = pay_out(
                db, row["seller_id"], total, rate, order_id, f"订单 #{order_id}",
            )
            db.execute(
                "UPDATE orders SET seller_credit = ?, commission_amount = ? WHERE id = ?",
                (str(seller_credit), str(commission), order_id),
            )
            self.notifications.notify(
                row["seller_id"], "货款已到账",
                f"订单 #{order_id} 托管资金已释放，到账 {seller_credit:.2f}（平台佣金 {commission:.2f}）。",
                conn=db,
            )

        logger.info(
            "托管释放成功: order_id=%d, seller_id=%s, seller_credit=%s, commission=%s",
            order_id, row["seller_id"], seller_credit, commission,
        )
        return EscrowRelease(
            order_id=order_id,
            released=True,
            seller_id=row["seller_id"],
            seller_credit=seller_credit,
            commission=commission,
        )

    def try_release(self, order_id: int) -> EscrowRelease | None:
        """
        “可能已就绪”信号：条件未满足时静默返回 None，不向调用方报错。
        确认收货、付清尾款后以及后台巡检都会调用。
        """
        try:
            return self.release_escrow_to_seller(order_id)
        except EscrowNotReadyError:
            return None
        except PaymentFlowError as e:
            logger.warning("托管释放尝试失败 (order_id=%d): %s", order_id, e)
            return None

    def pending_release_ids(self, limit: int = 200) -> list[int]:
        """已确认收货且已付清、但尚未释放的订单。"""
        db = get_db()
        try:
            rows = db.execute(
                """SELECT id FROM orders
                   WHERE delivered = 1 AND balance_paid = 1 AND escrow_released = 0
                   ORDER BY id ASC LIMIT ?""",
                (limit,),
            ).fetchall()
        finally:
            db.close()
        return [r["id"] for r in rows]

    def sweep(self) -> int:
        """后台巡检：释放所有已就绪订单，返回本轮释放数量。"""
        released = 0
        for order_id in self.pending_release_ids():
            result = self.try_release(order_id)
            if result and result.released:
                released += 1
        if released:
            logger.info("托管巡检完成，本轮释放 %d 笔订单", released)
        return released
