"""
高级卖家订阅服务（subscribe_with_wallet）：钱包扣费开通 30 天订阅。

套餐价格以服务端 SUBSCRIPTION_PLANS 为准，客户端提交的金额只用于核对。
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from omniflow.database import get_db, transaction
from omniflow.models.schemas import Subscription
from omniflow.services.errors import InvalidAmountError
from omniflow.services.platform_config import platform_wallet_user_id
from omniflow.services.wallet_service import WalletService, to_amount

logger = logging.getLogger(__name__)

SUBSCRIPTION_DAYS = 30

# 套餐名 -> 月费
SUBSCRIPTION_PLANS = {
    "Basic": Decimal("200.00"),
    "Pro": Decimal("500.00"),
    "Elite": Decimal("1000.00"),
}


def resolve_plan(plan_name: str) -> tuple[str, Decimal]:
    """按名称查找套餐（忽略大小写），返回 (规范名称, 价格)。"""
    key = (plan_name or "").strip().lower()
    if not key:
        raise InvalidAmountError("套餐名称不能为空")
    for name, price in SUBSCRIPTION_PLANS.items():
        if name.lower() == key:
            return name, price
    raise InvalidAmountError(f"未知套餐: {plan_name}")


def list_plans() -> list[dict]:
    return [
        {"plan_name": name, "price": f"{price:.2f}", "days": SUBSCRIPTION_DAYS}
        for name, price in SUBSCRIPTION_PLANS.items()
    ]


class SubscriptionService:
    """订阅：扣费、续期、状态查询。"""

    def __init__(self):
        self.wallets = WalletService()

    def subscribe_with_wallet(self, user_id: str, plan_name: str, amount=None) -> Subscription:
        """
        按套餐价格从用户钱包扣费，计入平台钱包，开通/续期 30 天订阅。
        有效期内续期从当前到期时间顺延。amount 为空时直接按套餐价格扣费。

        Raises:
            InvalidAmountError: 套餐不存在，或 amount 与套餐价格不一致。
            InsufficientFundsError: 余额不足，不产生订阅。
        """
        plan_name, value = resolve_plan(plan_name)
        if amount is not None and to_amount(amount) != value:
            raise InvalidAmountError(f"{plan_name} 套餐价格为 {value:.2f}")

        now = datetime.now()
        now_str = now.strftime("%Y-%m-%d %H:%M:%S")

        with transaction() as db:
            self.wallets.adjust_balance(
                user_id, -value, "subscription",
                reference=f"plan:{plan_name}", note=f"订阅 {plan_name}", conn=db,
            )
            self.wallets.adjust_balance(
                platform_wallet_user_id(), value, "subscription_revenue",
                reference=f"plan:{plan_name}", note=f"用户 {user_id} 订阅 {plan_name}", conn=db,
            )

            current = db.execute(
                """SELECT expires_at FROM subscriptions
                   WHERE user_id = ? AND expires_at > ?
                   ORDER BY expires_at DESC LIMIT 1""",
                (user_id, now_str),
            ).fetchone()
            starts_at = (
                datetime.strptime(current["expires_at"], "%Y-%m-%d %H:%M:%S") if current else now
            )
            expires_at = starts_at + timedelta(days=SUBSCRIPTION_DAYS)

            cursor = db.execute(
                """INSERT INTO subscriptions
                   (user_id, plan_name, amount, starts_at, expires_at, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    user_id, plan_name, str(value),
                    starts_at.strftime("%Y-%m-%d %H:%M:%S"),
                    expires_at.strftime("%Y-%m-%d %H:%M:%S"),
                    now_str,
                ),
            )
            sub_id = cursor.lastrowid

        logger.info(
            "订阅成功: user_id=%s, plan=%s, amount=%s, expires_at=%s",
            user_id, plan_name, value, expires_at,
        )
        return Subscription(
            id=sub_id,
            user_id=user_id,
            plan_name=plan_name,
            amount=value,
            starts_at=starts_at.strftime("%Y-%m-%d %H:%M:%S"),
            expires_at=expires_at.strftime("%Y-%m-%d %H:%M:%S"),
            created_at=now_str,
        )

    def get_subscription_status(self, user_id: str) -> dict:
        """返回 {is_premium, plan_name, expires_at}。"""
        now_str = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            row = db.execute(
                """SELECT plan_name, expires_at FROM subscriptions
                   WHERE user_id = ? AND expires_at > ?
                   ORDER BY expires_at DESC LIMIT 1""",
                (user_id, now_str),
            ).fetchone()
        finally:
            db.close()

        if not row:
            return {"is_premium": False, "plan_name": None, "expires_at": None}
        return {
            "is_premium": True,
            "plan_name": row["plan_name"],
            "expires_at": row["expires_at"],
        }
