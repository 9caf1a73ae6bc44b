"""
配送确认服务：买家提交 OTP 确认收货（mark_order_delivered）。

校验与写入在同一个写事务内完成，两次并发确认不会同时通过。
连续输错 OTP_MAX_ATTEMPTS 次后锁定 OTP_LOCK_MINUTES 分钟。
"""

import hmac
import logging
import os
from datetime import datetime, timedelta

from omniflow.database import transaction
from omniflow.models.schemas import Order
from omniflow.services.errors import (
    ForbiddenError,
    InvalidOtpError,
    OrderStateError,
    OtpLockedError,
)
from omniflow.services.notification_service import NotificationService
from omniflow.services.order_service import OTP_LENGTH, fetch_order_row, row_to_order
from omniflow.services.platform_config import decrypt_otp

logger = logging.getLogger(__name__)


def _max_attempts() -> int:
    return int(os.getenv("OTP_MAX_ATTEMPTS", "5"))


def _lock_minutes() -> int:
    return int(os.getenv("OTP_LOCK_MINUTES", "15"))


def normalize_otp(otp) -> str | None:
    """
    规范化提交的配送码：字符串去首尾空白；整数按 6 位补前导 0。
    其他类型或越界的整数返回 None。
    """
    if isinstance(otp, bool):
        return None
    if isinstance(otp, int):
        if 0 <= otp < 10 ** OTP_LENGTH:
            return f"{otp:0{OTP_LENGTH}d}"
        return None
    if isinstance(otp, str):
        return otp.strip()
    return None


def _is_well_formed(otp) -> bool:
    return isinstance(otp, str) and len(otp) == OTP_LENGTH and otp.isdigit()


class DeliveryService:
    """OTP 收货确认。"""

    def __init__(self):
        self.notifications = NotificationService()

    def confirm_delivery(
        self, order_id: int, submitted_otp: str | int, buyer_id: str | None = None
    ) -> Order:
        """
        确认收货：
        - 订单存在，卖家已将状态推进到 delivered，买家尚未确认
        - OTP 必须与下单时生成的 6 位码完全一致
        - 成功：delivered = 1，重置错误计数
        - 失败：delivered 不变，错误计数 +1，达到上限后锁定

        buyer_id 为 None 表示系统内部调用（不校验买家身份）。

        Raises:
            OrderNotFoundError: 订单不存在。
            ForbiddenError: 调用者不是买家。
            OrderStateError: 卖家尚未标记送达，或已确认过收货。
            OtpLockedError: 错误次数过多，锁定中。
            OtpUnavailableError: 存储的配送码无法解密，买家需重新获取（不计错误次数）。
            InvalidOtpError: OTP 不匹配。
        """
        now = datetime.now()
        now_str = now.strftime("%Y-%m-%d %H:%M:%S")
        failure = None

        with transaction() as db:
            row = fetch_order_row(db, order_id)
            if buyer_id is not None and row["buyer_id"] != buyer_id:
                raise ForbiddenError("只有买家可以确认收货")
            if row["delivered"]:
                raise OrderStateError("订单已确认收货")
            if row["status"] != "delivered":
                raise OrderStateError("卖家尚未标记订单送达")

            attempts = row["otp_attempts"] or 0
            if row["otp_locked_until"]:
                locked_until = datetime.strptime(row["otp_locked_until"], "%Y-%m-%d %H:%M:%S")
                if now < locked_until:
                    raise OtpLockedError("验证码错误次数过多，请稍后再试")
                # 锁定已过期，重置计数
                attempts = 0
                db.execute(
                    "UPDATE orders SET otp_attempts = 0, otp_locked_until = NULL WHERE id = ?",
                    (order_id,),
                )

            expected = decrypt_otp(row["delivery_otp"])
            submitted = normalize_otp(submitted_otp)
            matched = _is_well_formed(submitted) and hmac.compare_digest(
                submitted.encode("utf-8"), expected.encode("utf-8")
            )

            if not matched:
                attempts += 1
                if attempts >= _max_attempts():
                    locked_until = (now + timedelta(minutes=_lock_minutes())).strftime(
                        "%Y-%m-%d %H:%M:%S"
                    )
                    db.execute(
                        "UPDATE orders SET otp_attempts = ?, otp_locked_until = ? WHERE id = ?",
                        (attempts, locked_until, order_id),
                    )
                    failure = OtpLockedError("验证码错误次数过多，请稍后再试")
                else:
                    db.execute(
                        "UPDATE orders SET otp_attempts = ? WHERE id = ?",
                        (attempts, order_id),
                    )
                    failure = InvalidOtpError("验证码错误")
            else:
                cursor = db.execute(
                    """UPDATE orders
                       SET delivered = 1, delivered_at = ?, updated_at = ?,
                           otp_attempts = 0, otp_locked_until = NULL
                       WHERE id = ? AND delivered = 0""",
                    (now_str, now_str, order_id),
                )
                if cursor.rowcount == 0:
                    raise OrderStateError("订单已确认收货")
                self.notifications.notify(
                    row["seller_id"], "买家已确认收货",
                    f"订单 #{order_id} 买家已确认收货。",
                    conn=db,
                )
                row = fetch_order_row(db, order_id)

        # 错误计数需要落库，所以在事务提交之后再抛出
        if failure is not None:
            logger.warning(
                "配送码校验失败: order_id=%d, attempts=%d, error=%s",
                order_id, attempts, failure.error_code,
            )
            raise failure

        logger.info("确认收货成功: order_id=%d", order_id)
        return row_to_order(row)
