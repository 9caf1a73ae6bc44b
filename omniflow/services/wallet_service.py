"""
钱包账本服务：余额查询、流水查询、原子加减款。

所有余额变动必须经过 adjust_balance：在持有写锁的事务内读取余额、
校验不为负、写回新余额并记录一条 wallet_transactions 流水。
"""

import logging
import sqlite3
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from omniflow.database import get_db, transaction
from omniflow.models.schemas import WalletTransaction
from omniflow.services.errors import InsufficientFundsError, InvalidAmountError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

# wallet_transactions.type 允许的取值
VALID_REASONS = {
    "topup",
    "deposit",
    "balance_payment",
    "escrow_release",
    "commission",
    "subscription",
    "subscription_revenue",
    "installment_payment",
    "adjustment",
}


def to_amount(value) -> Decimal:
    """
    将数据库/请求中的金额统一为保留两位小数的 Decimal。

    SQLite 的 DECIMAL 列实际以 REAL/INTEGER 存储，先转 str 再构造
    Decimal 以避免二进制浮点误差被带入。
    """
    if value is None:
        return Decimal("0.00")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(f"金额格式无效: {value}")
    if not amount.is_finite():
        raise InvalidAmountError(f"金额格式无效: {value}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


class WalletService:
    """钱包账本：余额、流水、原子加减款。"""

    def get_balance(self, user_id: str) -> Decimal:
        """查询余额，钱包不存在时视为 0。"""
        db = get_db()
        try:
            row = db.execute(
                "SELECT balance FROM wallets WHERE user_id = ?", (user_id,)
            ).fetchone()
            return to_amount(row["balance"]) if row else Decimal("0.00")
        finally:
            db.close()

    def adjust_balance(
        self,
        user_id: str,
        delta,
        reason: str,
        *,
        order_id: int | None = None,
        reference: str | None = None,
        note: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Decimal:
        """
        原子加减款。

        传入 conn 时在调用方的事务内执行（调用方负责提交/回滚），
        否则自行开启 BEGIN IMMEDIATE 事务。

        Args:
            user_id: 钱包所属用户。
            delta: 正数为入账，负数为扣款。
            reason: 流水类型，见 VALID_REASONS。

        Returns:
            变动后的余额。

        Raises:
            InsufficientFundsError: 扣款后余额将为负，余额保持不变。
            InvalidAmountError: delta 为 0 或格式错误、reason 未知。
        """
        if reason not in VALID_REASONS:
            raise InvalidAmountError(f"未知的流水类型: {reason}")
        amount = to_amount(delta)
        if amount == 0:
            raise InvalidAmountError("变动金额不能为 0")

        if conn is not None:
            return self._apply(conn, user_id, amount, reason, order_id, reference, note)

        with transaction() as db:
            return self._apply(db, user_id, amount, reason, order_id, reference, note)

    def _apply(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        amount: Decimal,
        reason: str,
        order_id: int | None,
        reference: str | None,
        note: str | None,
    ) -> Decimal:
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        row = conn.execute(
            "SELECT balance FROM wallets WHERE user_id = ?", (user_id,)
        ).fetchone()
        current = to_amount(row["balance"]) if row else Decimal("0.00")

        new_balance = current + amount
        if new_balance < 0:
            logger.info(
                "余额不足，拒绝扣款: user_id=%s, balance=%s, delta=%s, reason=%s",
                user_id, current, amount, reason,
            )
            raise InsufficientFundsError(
                f"钱包余额不足：当前 {current:.2f}，需要 {-amount:.2f}"
            )

        if row:
            conn.execute(
                "UPDATE wallets SET balance = ?, updated_at = ? WHERE user_id = ?",
                (str(new_balance), now, user_id),
            )
        else:
            conn.execute(
                """INSERT INTO wallets (user_id, balance, created_at, updated_at)
                   VALUES (?, ?, ?, ?)""",
                (user_id, str(new_balance), now, now),
            )

        conn.execute(
            """INSERT INTO wallet_transactions
               (user_id, type, amount, balance_after, order_id, reference, note, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (user_id, reason, str(amount), str(new_balance),
             order_id, reference, note, now),
        )
        logger.debug(
            "钱包变动: user_id=%s, delta=%s, reason=%s, balance=%s",
            user_id, amount, reason, new_balance,
        )
        return new_balance

    def top_up(self, user_id: str, amount, reference: str | None = None) -> Decimal:
        """
        充值入账（管理员或外部支付渠道回调后调用）。

        Raises:
            InvalidAmountError: 金额不是正数。
        """
        value = to_amount(amount)
        if value <= 0:
            raise InvalidAmountError("充值金额必须大于 0")
        balance = self.adjust_balance(
            user_id, value, "topup", reference=reference, note="钱包充值",
        )
        logger.info("钱包充值: user_id=%s, amount=%s, balance=%s", user_id, value, balance)
        return balance

    def list_transactions(
        self, user_id: str, limit: int = 50, tx_type: str | None = None
    ) -> list[WalletTransaction]:
        """按时间倒序返回用户流水。"""
        limit = max(1, min(int(limit), 500))
        db = get_db()
        try:
            sql = "SELECT * FROM wallet_transactions WHERE user_id = ?"
            params: list = [user_id]
            if tx_type:
                sql += " AND type = ?"
                params.append(tx_type)
            sql += " ORDER BY id DESC LIMIT ?"
            params.append(limit)
            rows = db.execute(sql, params).fetchall()
        finally:
            db.close()

        return [row_to_transaction(r) for r in rows]


def row_to_transaction(row) -> WalletTransaction:
    return WalletTransaction(
        id=row["id"],
        user_id=row["user_id"],
        type=row["type"],
        amount=to_amount(row["amount"]),
        balance_after=to_amount(row["balance_after"]),
        order_id=row["order_id"],
        reference=row["reference"],
        note=row["note"],
        created_at=row["created_at"],
    )


def transaction_to_dict(tx: WalletTransaction) -> dict:
    return {
        "id": tx.id,
        "user_id": tx.user_id,
        "type": tx.type,
        "amount": f"{tx.amount:.2f}",
        "balance_after": f"{tx.balance_after:.2f}",
        "order_id": tx.order_id,
        "reference": tx.reference or "",
        "note": tx.note or "",
        "created_at": tx.created_at,
    }
