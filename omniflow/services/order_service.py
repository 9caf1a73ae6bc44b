"""
订单服务模块：定金下单、卖家履约状态推进、评价、订单查询。
"""

import logging
import secrets
import sqlite3
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from omniflow.database import get_db, transaction
from omniflow.models.schemas import (
    ORDER_STATUS_COMPLETED,
    ORDER_STATUS_FLOW,
    DepositPolicy,
    Order,
)
from omniflow.services.errors import (
    ForbiddenError,
    InvalidAmountError,
    OrderNotFoundError,
    OrderStateError,
    OtpUnavailableError,
    ProductUnavailableError,
)
from omniflow.services.notification_service import NotificationService
from omniflow.services.platform_config import (
    PlatformConfigError,
    decrypt_otp,
    encrypt_otp,
    get_default_deposit_percent,
    parse_rate,
)
from omniflow.services.product_service import resolve_commission_rate
from omniflow.services.wallet_service import CENT, WalletService, to_amount

logger = logging.getLogger(__name__)

OTP_LENGTH = 6


def generate_delivery_otp() -> str:
    """生成 6 位数字配送确认码（允许前导 0）。"""
    return f"{secrets.randbelow(10 ** OTP_LENGTH):0{OTP_LENGTH}d}"


def row_to_order(row) -> Order:
    return Order(
        id=row["id"],
        buyer_id=row["buyer_id"],
        seller_id=row["seller_id"],
        store_id=row["store_id"],
        product_id=row["product_id"],
        quantity=row["quantity"],
        variant=row["variant"],
        unit_price=to_amount(row["unit_price"]),
        delivery_fee=to_amount(row["delivery_fee"]),
        total_price=to_amount(row["total_price"]),
        deposit_amount=to_amount(row["deposit_amount"]),
        balance_due=to_amount(row["balance_due"]),
        commission_rate=Decimal(str(row["commission_rate"])),
        status=row["status"],
        delivered=bool(row["delivered"]),
        balance_paid=bool(row["balance_paid"]),
        escrow_released=bool(row["escrow_released"]),
        seller_credit=to_amount(row["seller_credit"]) if row["seller_credit"] is not None else None,
        commission_amount=(
            to_amount(row["commission_amount"]) if row["commission_amount"] is not None else None
        ),
        delivery_method=row["delivery_method"],
        delivery_location=row["delivery_location"],
        contact_phone=row["contact_phone"],
        payment_method=row["payment_method"],
        rating=row["rating"],
        rating_submitted=bool(row["rating_submitted"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        delivered_at=row["delivered_at"],
        balance_paid_at=row["balance_paid_at"],
        escrow_released_at=row["escrow_released_at"],
    )


def fetch_order_row(conn: sqlite3.Connection, order_id: int):
    """
    Raises:
        OrderNotFoundError: 订单不存在。
    """
    row = conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
    if not row:
        raise OrderNotFoundError(f"订单 id={order_id} 不存在")
    return row


def split_deposit(
    product_price: Decimal,
    delivery_fee: Decimal,
    policy: DepositPolicy,
    fallback_percent: Decimal,
) -> tuple[Decimal, Decimal, Decimal]:
    """
    计算 (total_price, deposit_amount, balance_due)。

    定金 = 商品金额 × 比例（或固定金额）+ 配送费；配送费随定金一次付清。
    保证 deposit_amount + balance_due == total_price。
    """
    if policy.fixed_amount is not None:
        deposit_product = to_amount(policy.fixed_amount)
        if deposit_product < 0 or deposit_product > product_price:
            raise InvalidAmountError("定金金额必须在 0 到商品金额之间")
    else:
        percent = policy.percent if policy.percent is not None else fallback_percent
        try:
            percent = parse_rate(percent)
        except PlatformConfigError as e:
            raise InvalidAmountError(str(e)) from e
        deposit_product = (product_price * percent).quantize(CENT, rounding=ROUND_HALF_UP)

    total_price = product_price + delivery_fee
    deposit_amount = deposit_product + delivery_fee
    balance_due = total_price - deposit_amount
    return total_price, deposit_amount, balance_due


class OrderService:
    """订单服务：定金下单、状态推进、评价、查询。"""

    def __init__(self):
        self.wallets = WalletService()
        self.notifications = NotificationService()

    def create_order_with_deposit(
        self,
        buyer_id: str,
        product_id: int,
        quantity: int = 1,
        policy: DepositPolicy | None = None,
        variant: str | None = None,
        delivery_method: str | None = None,
        delivery_location: str | None = None,
        contact_phone: str | None = None,
    ) -> Order:
        """
        定金下单（原子操作）：
        1. 校验商品在售且库存足够，扣减库存
        2. 计算总价、定金、尾款，快照佣金率
        3. 生成 6 位配送 OTP（加密存储）
        4. 从买家钱包扣除定金
        5. 写入订单并通知买卖双方

        任一步失败整体回滚：不产生订单、不扣款、不扣库存。

        Raises:
            ProductUnavailableError: 商品不存在/已下架/库存不足。
            InsufficientFundsError: 钱包余额不足以支付定金。
            InvalidAmountError: 数量或定金策略非法。
            OrderStateError: 买家购买自己的商品。
        """
        try:
            quantity = int(quantity)
        except (TypeError, ValueError):
            raise InvalidAmountError("购买数量无效")
        if quantity < 1:
            raise InvalidAmountError("购买数量必须大于 0")
        policy = policy or DepositPolicy()
        fallback_percent = get_default_deposit_percent()

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        otp = generate_delivery_otp()

        with transaction() as db:
            product = db.execute(
                "SELECT * FROM products WHERE id = ?", (product_id,)
            ).fetchone()
            if not product or product["active"] != 1:
                raise ProductUnavailableError("商品不存在或已下架")
            if product["owner_id"] == buyer_id:
                raise OrderStateError("不能购买自己的商品")

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
            product_price = (unit_price * quantity).quantize(CENT, rounding=ROUND_HALF_UP)
            delivery_fee = to_amount(product["delivery_fee"])

            if policy.percent is None and policy.fixed_amount is None \
                    and product["deposit_percent"] is not None:
                policy = DepositPolicy(percent=Decimal(str(product["deposit_percent"])))

            total_price, deposit_amount, balance_due = split_deposit(
                product_price, delivery_fee, policy, fallback_percent,
            )
            commission_rate = resolve_commission_rate(db, product)

            cursor = db.execute(
                """INSERT INTO orders
                   (buyer_id, seller_id, store_id, product_id, quantity, variant,
                    unit_price, delivery_fee, total_price, deposit_amount, balance_due,
                    commission_rate, status, delivered, delivery_otp, balance_paid,
                    escrow_released, delivery_method, delivery_location, contact_phone,
                    payment_method, created_at, updated_at, balance_paid_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', 0, ?, ?, 0,
                           ?, ?, ?, 'wallet', ?, ?, ?)""",
                (
                    buyer_id, product["owner_id"], product["store_id"], product_id,
                    quantity, variant,
                    str(unit_price), str(delivery_fee), str(total_price),
                    str(deposit_amount), str(balance_due), str(commission_rate),
                    encrypt_otp(otp),
                    1 if balance_due == 0 else 0,
                    delivery_method, delivery_location, contact_phone,
                    now, now,
                    now if balance_due == 0 else None,
                ),
            )
            order_id = cursor.lastrowid

            if deposit_amount > 0:
                self.wallets.adjust_balance(
                    buyer_id, -deposit_amount, "deposit",
                    order_id=order_id, note=f"订单 #{order_id} 定金", conn=db,
                )

            self.notifications.notify(
                buyer_id, "下单成功",
                f"订单 #{order_id} 已创建，已支付定金 {deposit_amount:.2f}，待付尾款 {balance_due:.2f}。",
                conn=db,
            )
            self.notifications.notify(
                product["owner_id"], "新订单",
                f"您有新订单 #{order_id}：{product['name']} × {quantity}。",
                conn=db,
            )
            row = fetch_order_row(db, order_id)

        order = row_to_order(row)
        logger.info(
            "定金订单创建成功: order_id=%d, buyer_id=%s, total=%s, deposit=%s, balance_due=%s",
            order.id, buyer_id, order.total_price, order.deposit_amount, order.balance_due,
        )
        return order

    def get_order(self, order_id: int) -> Order:
        db = get_db()
        try:
            row = fetch_order_row(db, order_id)
        finally:
            db.close()
        return row_to_order(row)

    def get_order_for_party(self, order_id: int, user_id: str) -> Order:
        """
        仅买家或卖家可查看订单。

        Raises:
            OrderNotFoundError / ForbiddenError
        """
        order = self.get_order(order_id)
        if user_id not in (order.buyer_id, order.seller_id):
            raise ForbiddenError("无权查看该订单")
        return order

    def get_delivery_otp(self, order_id: int, buyer_id: str) -> str:
        """买家读取自己订单的配送 OTP，用于交给配送员核验。"""
        db = get_db()
        try:
            row = fetch_order_row(db, order_id)
        finally:
            db.close()
        if row["buyer_id"] != buyer_id:
            raise ForbiddenError("只有买家可以查看配送码")
        try:
            return decrypt_otp(row["delivery_otp"])
        except OtpUnavailableError:
            if row["delivered"]:
                raise
            return self._reissue_delivery_otp(order_id)

    def _reissue_delivery_otp(self, order_id: int) -> str:
        """旧配送码无法解密时，为未确认收货的订单重新生成配送码。"""
        otp = generate_delivery_otp()
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        with transaction() as db:
            cursor = db.execute(
                """UPDATE orders SET delivery_otp = ?, updated_at = ?
                   WHERE id = ? AND delivered = 0""",
                (encrypt_otp(otp), now, order_id),
            )
            if cursor.rowcount == 0:
                raise OrderStateError("订单已确认收货")
        logger.warning("配送码无法解密，已重新生成: order_id=%d", order_id)
        return otp

    def list_orders(self, user_id: str, role: str = "buyer", status: str | None = None) -> list[Order]:
        """按买家或卖家身份列出订单，最新在前。"""
        column = "seller_id" if role == "seller" else "buyer_id"
        db = get_db()
        try:
            sql = f"SELECT * FROM orders WHERE {column} = ?"
            params: list = [user_id]
            if status:
                sql += " AND status = ?"
                params.append(status)
            sql += " ORDER BY id DESC"
            rows = db.execute(sql, params).fetchall()
        finally:
            db.close()
        return [row_to_order(r) for r in rows]

    def update_order_status(self, order_id: int, seller_id: str, new_status: str) -> Order:
        """
        卖家推进履约状态：只能沿 pending → processing → shipped →
        out_for_delivery → delivered 向前（可跳步），completed 仅由托管释放写入。

        Raises:
            OrderNotFoundError / ForbiddenError / OrderStateError
        """
        if new_status not in ORDER_STATUS_FLOW:
            raise OrderStateError(f"不支持的订单状态: {new_status}")

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        with transaction() as db:
            row = fetch_order_row(db, order_id)
            if row["seller_id"] != seller_id:
                raise ForbiddenError("只有卖家可以更新订单状态")
            current = row["status"]
            if current == ORDER_STATUS_COMPLETED or row["escrow_released"]:
                raise OrderStateError("订单已完成，不能再修改状态")
            if ORDER_STATUS_FLOW.index(new_status) <= ORDER_STATUS_FLOW.index(current):
                raise OrderStateError(f"订单状态不能从 {current} 变更为 {new_status}")

            db.execute(
                "UPDATE orders SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (new_status, now, order_id, current),
            )
            self.notifications.notify(
                row["buyer_id"], "订单状态更新",
                f"订单 #{order_id} 状态已更新为 {new_status}。",
                conn=db,
            )
            row = fetch_order_row(db, order_id)

        logger.info("订单状态更新: order_id=%d, %s -> %s", order_id, current, new_status)
        return row_to_order(row)

    def rate_order(self, order_id: int, buyer_id: str, rating: int) -> Order:
        """
        买家评价（1-5 分），仅限已确认收货的订单，且只能评价一次。
        不影响任何支付状态。
        """
        try:
            rating = int(rating)
        except (TypeError, ValueError):
            raise InvalidAmountError("评分必须是 1 到 5 的整数")
        if rating < 1 or rating > 5:
            raise InvalidAmountError("评分必须是 1 到 5 的整数")

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        with transaction() as db:
            row = fetch_order_row(db, order_id)
            if row["buyer_id"] != buyer_id:
                raise ForbiddenError("只有买家可以评价订单")
            if not row["delivered"]:
                raise OrderStateError("确认收货后才能评价")
            cursor = db.execute(
                """UPDATE orders SET rating = ?, rating_submitted = 1, updated_at = ?
                   WHERE id = ? AND rating_submitted = 0""",
                (rating, now, order_id),
            )
            if cursor.rowcount == 0:
                raise OrderStateError("订单已评价")
            row = fetch_order_row(db, order_id)
        return row_to_order(row)
