"""
分期订单服务（Lipa Mdogo Mdogo）：首付下单、按期付款、付清后一次性释放托管。

首付和每期款项都从买家钱包扣除并留在托管中，
全部付清后 finalize_installment_order 以比较并交换方式给卖家结算。
"""

import json
import logging
import sqlite3
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP

from omniflow.database import get_db, transaction
from omniflow.models.schemas import InstallmentOrder, InstallmentPayment
from omniflow.services.errors import (
    ForbiddenError,
    InvalidAmountError,
    OrderNotFoundError,
    OrderStateError,
    ProductUnavailableError,
)
from omniflow.services.escrow_service import pay_out
from omniflow.services.notification_service import NotificationService
from omniflow.services.product_service import normalize_installment_plan, resolve_commission_rate
from omniflow.services.wallet_service import CENT, WalletService, to_amount

logger = logging.getLogger(__name__)

UNPAID_STATUSES = ("pending", "overdue")


def build_schedule(
    total: Decimal, initial_percent: Decimal, installments: int
) -> tuple[Decimal, list[Decimal]]:
    """
    拆分首付和各期金额：各期均摊剩余金额（向下取整到分），最后一期吸收差额。
    首付 + 各期之和恰为 total。
    """
    initial = (total * initial_percent).quantize(CENT, rounding=ROUND_HALF_UP)
    remainder = total - initial
    per = (remainder / installments).quantize(CENT, rounding=ROUND_DOWN)
    amounts = [per] * (installments - 1)
    amounts.append(remainder - per * (installments - 1))
    return initial, amounts


def _row_to_payment(row) -> InstallmentPayment:
    return InstallmentPayment(
        id=row["id"],
        order_id=row["order_id"],
        buyer_id=row["buyer_id"],
        seq=row["seq"],
        amount=to_amount(row["amount"]),
        due_date=row["due_date"],
        status=row["status"],
        paid_at=row["paid_at"],
    )


def _row_to_installment_order(row, payments: list) -> InstallmentOrder:
    return InstallmentOrder(
        id=row["id"],
        buyer_id=row["buyer_id"],
        seller_id=row["seller_id"],
        store_id=row["store_id"],
        product_id=row["product_id"],
        quantity=row["quantity"],
        variant=row["variant"],
        total_price=to_amount(row["total_price"]),
        initial_amount=to_amount(row["initial_amount"]),
        amount_paid=to_amount(row["amount_paid"]),
        installment_amount=to_amount(row["installment_amount"]),
        installments_total=row["installments_total"],
        installments_paid=row["installments_paid"],
        interval_days=row["interval_days"],
        next_due_date=row["next_due_date"],
        commission_rate=Decimal(str(row["commission_rate"])),
        status=row["status"],
        escrow_released=bool(row["escrow_released"]),
        payments=[_row_to_payment(p) for p in payments],
        created_at=row["created_at"],
        completed_at=row["completed_at"],
    )


class InstallmentService:
    """分期订单：创建、付款、结算、查询、逾期标记。"""

    def __init__(self):
        self.wallets = WalletService()
        self.notifications = NotificationService()

    def _load(self, conn: sqlite3.Connection, order_id: int) -> InstallmentOrder:
        row = conn.execute(
            "SELECT * FROM installment_orders WHERE id = ?", (order_id,)
        ).fetchone()
        if not row:
            raise OrderNotFoundError(f"分期订单 id={order_id} 不存在")
        payments = conn.execute(
            "SELECT * FROM installment_payments WHERE order_id = ? ORDER BY seq ASC",
            (order_id,),
        ).fetchall()
        return _row_to_installment_order(row, payments)

    def start_installment_order(
        self,
        buyer_id: str,
        product_id: int,
        quantity: int = 1,
        variant: str | None = None,
        delivery_method: str | None = None,
        delivery_location: str | None = None,
        contact_phone: str | None = None,
    ) -> InstallmentOrder:
        """
        创建分期订单（原子操作）：扣库存、扣首付、生成付款计划。

        Raises:
            ProductUnavailableError: 商品不存在/下架/库存不足/不支持分期。
            InsufficientFundsError: 余额不足以支付首付。
            InvalidAmountError: 数量非法。
        """
        try:
            quantity = int(quantity)
        except (TypeError, ValueError):
            raise InvalidAmountError("购买数量无效")
        if quantity < 1:
            raise InvalidAmountError("购买数量必须大于 0")

        today = date.today()
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        with transaction() as db:
            product = db.execute(
                "SELECT * FROM products WHERE id = ?", (product_id,)
            ).fetchone()
            if not product or product["active"] != 1:
                raise ProductUnavailableError("商品不存在或已下架")
            if not product["installment_plan"]:
                raise ProductUnavailableError("该商品不支持分期付款")
            if product["owner_id"] == buyer_id:
                raise OrderStateError("不能购买自己的商品")

            plan = normalize_installment_plan(json.loads(product["installment_plan"]))
            initial_percent = Decimal(plan["initial_percent"])
            installments = plan["installments"]
            interval_days = plan["interval_days"]

            cursor = db.execute(
                """UPDATE products
                   SET stock_quantity = stock_quantity - ?, updated_at = ?
                   WHERE id = ? AND stock_quantity >= ?""",
                (quantity, now, product_id, quantity),
            )
            if cursor.rowcount == 0:
                raise ProductUnavailableError("商品库存不足")

            discount = Decimal(str(product["discount"] or 0))
            unit_price = (
                to_amount(product["price"]) * (Decimal("1") - discount / Decimal("100"))
            ).quantize(CENT, rounding=ROUND_HALF_UP)
            total = (unit_price * quantity).quantize(CENT, rounding=ROUND_HALF_UP) \
                + to_amount(product["delivery_fee"])
            initial, amounts = build_schedule(total, initial_percent, installments)
            commission_rate = resolve_commission_rate(db, product)
            first_due = (today + timedelta(days=interval_days)).isoformat()

            cursor = db.execute(
                """INSERT INTO installment_orders
                   (buyer_id, seller_id, store_id, product_id, quantity, variant,
                    total_price, initial_amount, amount_paid, installment_amount,
                    installments_total, installments_paid, interval_days, next_due_date,
                    commission_rate, status, escrow_released, delivery_method,
                    delivery_location, contact_phone, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, 'active', 0, ?, ?, ?, ?, ?)""",
                (
                    buyer_id, product["owner_id"], product["store_id"], product_id,
                    quantity, variant, str(total), str(initial), str(initial),
                    str(amounts[0]), installments, interval_days, first_due,
                    str(commission_rate), delivery_method, delivery_location,
                    contact_phone, now, now,
                ),
            )
            order_id = cursor.lastrowid

            for seq, amount in enumerate(amounts, start=1):
                due = today + timedelta(days=interval_days * seq)
                db.execute(
                    """INSERT INTO installment_payments
                       (order_id, buyer_id, seq, amount, due_date, status)
                       VALUES (?, ?, ?, ?, ?, 'pending')""",
                    (order_id, buyer_id, seq, str(amount), due.isoformat()),
                )

            if initial > 0:
                self.wallets.adjust_balance(
                    buyer_id, -initial, "installment_payment",
                    reference=f"installment:{order_id}:0",
                    note=f"分期订单 #{order_id} 首付", conn=db,
                )
            self.notifications.notify(
                product["owner_id"], "新分期订单",
                f"您有新的分期订单 #{order_id}：{product['name']} × {quantity}。",
                conn=db,
            )
            order = self._load(db, order_id)

        logger.info(
            "分期订单创建成功: order_id=%d, buyer_id=%s, total=%s, initial=%s, installments=%d",
            order_id, buyer_id, total, initial, installments,
        )
        return order

    def record_installment_payment(
        self, buyer_id: str, order_id: int, extra: bool = False
    ) -> InstallmentOrder:
        """
        支付最早一期未付款项；extra=True 时一次付清全部剩余期数。
        全部付清后自动结算给卖家。

        Raises:
            OrderNotFoundError / ForbiddenError / OrderStateError
            InsufficientFundsError: 余额不足，不产生任何变化。
        """
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        with transaction() as db:
            order = self._load(db, order_id)
            if order.buyer_id != buyer_id:
                raise ForbiddenError("只有买家可以支付分期款项")
            if order.status != "active":
                raise OrderStateError("分期订单已结清")

            unpaid = [p for p in order.payments if p.status in UNPAID_STATUSES]
            if not unpaid:
                raise OrderStateError("没有待支付的分期款项")
            to_pay = unpaid if extra else unpaid[:1]
            amount = sum((p.amount for p in to_pay), Decimal("0.00"))

            if amount > 0:
                self.wallets.adjust_balance(
                    buyer_id, -amount, "installment_payment",
                    reference=f"installment:{order_id}:{to_pay[-1].seq}",
                    note=f"分期订单 #{order_id} 第 {','.join(str(p.seq) for p in to_pay)} 期",
                    conn=db,
                )
            for p in to_pay:
                db.execute(
                    "UPDATE installment_payments SET status = 'paid', paid_at = ? WHERE id = ?",
                    (now, p.id),
                )

            remaining = unpaid[len(to_pay):]
            next_due = remaining[0].due_date if remaining else None
            db.execute(
                """UPDATE installment_orders
                   SET amount_paid = ?, installments_paid = installments_paid + ?,
                       next_due_date = ?, updated_at = ?
                   WHERE id = ?""",
                (str(order.amount_paid + amount), len(to_pay), next_due, now, order_id),
            )
            self.notifications.notify(
                buyer_id, "分期付款成功",
                f"分期订单 #{order_id} 已支付 {amount:.2f}。",
                conn=db,
            )

        logger.info(
            "分期付款成功: order_id=%d, buyer_id=%s, amount=%s, periods=%d",
            order_id, buyer_id, amount, len(to_pay),
        )

        if not remaining:
            return self.finalize_installment_order(order_id)
        return self.get_installment_order(order_id)

    def finalize_installment_order(self, order_id: int) -> InstallmentOrder:
        """
        全部付清后结算：卖家入账 total - 佣金，平台入账佣金，状态 completed。
        对已结算订单重复调用为空操作。

        Raises:
            OrderNotFoundError / OrderStateError（仍有未付款项）
        """
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        with transaction() as db:
            order = self._load(db, order_id)
            if order.escrow_released:
                return order
            if any(p.status in UNPAID_STATUSES for p in order.payments):
                raise OrderStateError("仍有未支付的分期款项")

            cursor = db.execute(
                """UPDATE installment_orders
                   SET escrow_released = 1, status = 'completed', completed_at = ?, updated_at = ?
                   WHERE id = ? AND escrow_released = 0""",
                (now, now, order_id),
            )
            if cursor.rowcount == 0:
                return self._load(db, order_id)

            seller_credit, commission = pay_out(
                db, order.seller_id, order.total_price, order.commission_rate,
                None, f"分期订单 #{order_id}", reference=f"installment:{order_id}",
            )
            self.notifications.notify(
                order.seller_id, "分期货款已到账",
                f"分期订单 #{order_id} 已结清，到账 {seller_credit:.2f}（平台佣金 {commission:.2f}）。",
                conn=db,
            )
            order = self._load(db, order_id)

        logger.info(
            "分期订单结算完成: order_id=%d, seller_credit=%s, commission=%s",
            order_id, seller_credit, commission,
        )
        return order

    def get_installment_order(self, order_id: int) -> InstallmentOrder:
        db = get_db()
        try:
            return self._load(db, order_id)
        finally:
            db.close()

    def list_installment_orders(self, buyer_id: str) -> list[InstallmentOrder]:
        db = get_db()
        try:
            rows = db.execute(
                "SELECT id FROM installment_orders WHERE buyer_id = ? ORDER BY id DESC",
                (buyer_id,),
            ).fetchall()
            return [self._load(db, r["id"]) for r in rows]
        finally:
            db.close()

    def mark_overdue(self, today: date | None = None) -> int:
        """将到期未付的分期款项标记为 overdue（仍可支付），返回标记数量。"""
        today = today or date.today()
        db = get_db()
        try:
            cursor = db.execute(
                """UPDATE installment_payments SET status = 'overdue'
                   WHERE status = 'pending' AND due_date < ?""",
                (today.isoformat(),),
            )
            db.commit()
            return cursor.rowcount
        finally:
            db.close()
