"""商品与店铺服务模块，以及佣金率解析。"""

import json
import logging
import sqlite3
from datetime import datetime
from decimal import Decimal

from omniflow.database import get_db
from omniflow.models.schemas import Product, Store
from omniflow.services.errors import (
    ForbiddenError,
    InvalidAmountError,
    ProductUnavailableError,
)
from omniflow.services.platform_config import (
    PlatformConfigError,
    get_default_commission_rate,
    parse_rate,
)
from omniflow.services.wallet_service import to_amount

logger = logging.getLogger(__name__)

# 分期方案默认值
DEFAULT_INSTALLMENT_PLAN = {
    "initial_percent": "0.3",
    "installments": 3,
    "interval_days": 30,
}


def _optional_rate(value) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return parse_rate(value)
    except PlatformConfigError as e:
        raise InvalidAmountError(str(e)) from e


def normalize_installment_plan(plan: dict | None) -> dict | None:
    """
    校验并补全分期方案。

    Raises:
        InvalidAmountError: 比例越界、期数或间隔非正整数。
    """
    if not plan:
        return None
    merged = {**DEFAULT_INSTALLMENT_PLAN, **plan}
    initial = _optional_rate(merged["initial_percent"])
    try:
        installments = int(merged["installments"])
        interval_days = int(merged["interval_days"])
    except (TypeError, ValueError):
        raise InvalidAmountError("分期期数和间隔天数必须是整数")
    if installments < 1 or interval_days < 1:
        raise InvalidAmountError("分期期数和间隔天数必须大于 0")
    normalized = {
        "initial_percent": str(initial),
        "installments": installments,
        "interval_days": interval_days,
    }
    if merged.get("terms"):
        normalized["terms"] = str(merged["terms"])
    return normalized


def row_to_product(row) -> Product:
    return Product(
        id=row["id"],
        owner_id=row["owner_id"],
        store_id=row["store_id"],
        name=row["name"],
        price=to_amount(row["price"]),
        discount=Decimal(str(row["discount"] or 0)),
        stock_quantity=row["stock_quantity"],
        commission_rate=(
            Decimal(str(row["commission_rate"])) if row["commission_rate"] is not None else None
        ),
        deposit_percent=(
            Decimal(str(row["deposit_percent"])) if row["deposit_percent"] is not None else None
        ),
        delivery_fee=to_amount(row["delivery_fee"]),
        installment_plan=json.loads(row["installment_plan"]) if row["installment_plan"] else None,
        active=row["active"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def product_to_dict(p: Product) -> dict:
    return {
        "id": p.id,
        "owner_id": p.owner_id,
        "store_id": p.store_id,
        "name": p.name,
        "price": f"{p.price:.2f}",
        "discount": str(p.discount),
        "stock_quantity": p.stock_quantity,
        "commission_rate": str(p.commission_rate) if p.commission_rate is not None else None,
        "deposit_percent": str(p.deposit_percent) if p.deposit_percent is not None else None,
        "delivery_fee": f"{p.delivery_fee:.2f}",
        "installment_plan": p.installment_plan,
        "active": p.active,
        "created_at": p.created_at,
    }


def resolve_commission_rate(conn: sqlite3.Connection, product_row) -> Decimal:
    """
    解析订单佣金率：商品 commission_rate → 店铺 commission_rate → 平台默认值。

    结果在下单时写入订单，之后调整策略不影响在途订单。
    """
    if product_row["commission_rate"] is not None:
        return Decimal(str(product_row["commission_rate"]))

    if product_row["store_id"] is not None:
        store = conn.execute(
            "SELECT commission_rate FROM stores WHERE id = ?",
            (product_row["store_id"],),
        ).fetchone()
        if store and store["commission_rate"] is not None:
            return Decimal(str(store["commission_rate"]))

    return get_default_commission_rate()


class ProductService:
    """商品/店铺服务：创建、上下架、补货、查询。"""

    def create_store(self, owner_id: str, name: str, commission_rate=None) -> Store:
        """创建店铺，可选店铺级佣金率。"""
        if not name or not name.strip():
            raise InvalidAmountError("店铺名称不能为空")
        rate = _optional_rate(commission_rate)
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        db = get_db()
        try:
            cursor = db.execute(
                """INSERT INTO stores (owner_id, name, commission_rate, created_at)
                   VALUES (?, ?, ?, ?)""",
                (owner_id, name.strip(), str(rate) if rate is not None else None, now),
            )
            db.commit()
            store_id = cursor.lastrowid
        finally:
            db.close()

        logger.info("店铺已创建: store_id=%d, owner_id=%s", store_id, owner_id)
        return Store(
            id=store_id,
            owner_id=owner_id,
            name=name.strip(),
            commission_rate=rate,
            created_at=now,
        )

    def create_product(
        self,
        owner_id: str,
        name: str,
        price,
        stock_quantity: int,
        store_id: int | None = None,
        discount=0,
        commission_rate=None,
        deposit_percent=None,
        delivery_fee=0,
        installment_plan: dict | None = None,
    ) -> Product:
        """
        创建商品。

        Raises:
            InvalidAmountError: 价格/库存/比例非法。
            ForbiddenError: store_id 不属于 owner_id。
        """
        if not name or not name.strip():
            raise InvalidAmountError("商品名称不能为空")
        price_val = to_amount(price)
        if price_val <= 0:
            raise InvalidAmountError("商品价格必须大于 0")
        if int(stock_quantity) < 0:
            raise InvalidAmountError("库存不能为负数")
        discount_val = Decimal(str(discount or 0))
        if discount_val < 0 or discount_val > 100:
            raise InvalidAmountError("折扣必须在 0 到 100 之间")
        fee_val = to_amount(delivery_fee)
        if fee_val < 0:
            raise InvalidAmountError("配送费不能为负数")
        commission = _optional_rate(commission_rate)
        deposit = _optional_rate(deposit_percent)
        plan = normalize_installment_plan(installment_plan)

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            if store_id is not None:
                store = db.execute(
                    "SELECT owner_id FROM stores WHERE id = ?", (store_id,)
                ).fetchone()
                if not store or store["owner_id"] != owner_id:
                    raise ForbiddenError("店铺不存在或不属于当前用户")

            cursor = db.execute(
                """INSERT INTO products
                   (owner_id, store_id, name, price, discount, stock_quantity,
                    commission_rate, deposit_percent, delivery_fee, installment_plan,
                    active, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)""",
                (
                    owner_id, store_id, name.strip(), str(price_val), str(discount_val),
                    int(stock_quantity),
                    str(commission) if commission is not None else None,
                    str(deposit) if deposit is not None else None,
                    str(fee_val),
                    json.dumps(plan) if plan else None,
                    now, now,
                ),
            )
            db.commit()
            product_id = cursor.lastrowid
        finally:
            db.close()

        return self.get_product(product_id)

    def get_product(self, product_id: int) -> Product:
        """
        Raises:
            ProductUnavailableError: 商品不存在。
        """
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM products WHERE id = ?", (product_id,)
            ).fetchone()
        finally:
            db.close()
        if not row:
            raise ProductUnavailableError(f"商品 id={product_id} 不存在")
        return row_to_product(row)

    def list_products(self, owner_id: str | None = None, active_only: bool = True) -> list[Product]:
        db = get_db()
        try:
            sql = "SELECT * FROM products WHERE 1=1"
            params: list = []
            if owner_id:
                sql += " AND owner_id = ?"
                params.append(owner_id)
            if active_only:
                sql += " AND active = 1"
            sql += " ORDER BY id DESC"
            rows = db.execute(sql, params).fetchall()
        finally:
            db.close()
        return [row_to_product(r) for r in rows]

    def toggle_product(self, product_id: int, owner_id: str, active: bool) -> None:
        """
        上架或下架商品。

        Raises:
            ProductUnavailableError: 商品不存在。
            ForbiddenError: 不是商品所有者。
        """
        self._check_owner(product_id, owner_id)
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            db.execute(
                "UPDATE products SET active = ?, updated_at = ? WHERE id = ?",
                (1 if active else 0, now, product_id),
            )
            db.commit()
        finally:
            db.close()

    def restock(self, product_id: int, owner_id: str, quantity: int) -> int:
        """增加库存，返回补货后的库存。"""
        if int(quantity) <= 0:
            raise InvalidAmountError("补货数量必须大于 0")
        self._check_owner(product_id, owner_id)
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            db.execute(
                """UPDATE products SET stock_quantity = stock_quantity + ?, updated_at = ?
                   WHERE id = ?""",
                (int(quantity), now, product_id),
            )
            db.commit()
            row = db.execute(
                "SELECT stock_quantity FROM products WHERE id = ?", (product_id,)
            ).fetchone()
            return row["stock_quantity"]
        finally:
            db.close()

    def _check_owner(self, product_id: int, owner_id: str) -> None:
        product = self.get_product(product_id)
        if product.owner_id != owner_id:
            raise ForbiddenError("无权操作该商品")
