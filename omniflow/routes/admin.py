"""
管理后台路由：认证（登录/改密）、仪表盘、订单管理、手动托管释放、
钱包充值、资金流水及导出、平台费率设置。
"""

import csv
import io
import math
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from omniflow.database import get_db
from omniflow.models.schemas import ORDER_STATUS_COMPLETED, ORDER_STATUS_FLOW
from omniflow.routes.common import error_response
from omniflow.services.auth import authenticate, get_current_admin, hash_password, verify_password
from omniflow.services.errors import PaymentFlowError
from omniflow.services.escrow_service import EscrowService
from omniflow.services.order_service import OrderService
from omniflow.services.platform_config import (
    COMMISSION_RATE_KEY,
    DEPOSIT_PERCENT_KEY,
    PlatformConfigError,
    get_settings,
    platform_wallet_user_id,
    set_rate_setting,
)
from omniflow.services.wallet_service import WalletService, row_to_transaction, transaction_to_dict

router = APIRouter(prefix="/v1/admin")


class LoginRequest(BaseModel):
    username: str
    password: str


@router.post("/auth/login")
async def login(body: LoginRequest):
    """
    管理员登录。

    接收 JSON {username, password}，
    成功返回 {code: 1, token: "..."}，
    失败返回 {code: -1, msg: "..."}。
    """
    try:
        result = authenticate(body.username, body.password)
        return JSONResponse(content=result)
    except ValueError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})


# ── 仪表盘 ────────────────────────────────────────────────


def _cents(value) -> int:
    return int(value or 0)


@router.get("/dashboard")
async def dashboard(admin: dict = Depends(get_current_admin)):
    """管理后台仪表盘：订单状态分布、托管中资金、佣金收入、分期概况。"""
    db = get_db()
    try:
        return _render_dashboard(db)
    finally:
        db.close()


def _render_dashboard(db):
    # 金额用整数分汇总，避免浮点精度问题
    status_rows = db.execute(
        "SELECT status, COUNT(*) AS cnt FROM orders GROUP BY status"
    ).fetchall()
    order_counts = {s: 0 for s in (*ORDER_STATUS_FLOW, ORDER_STATUS_COMPLETED)}
    for r in status_rows:
        order_counts[r["status"]] = r["cnt"]

    # 托管中资金：未释放订单已收取的金额（定金 + 已付尾款）
    held_row = db.execute(
        """SELECT COALESCE(SUM(CAST(ROUND((total_price - balance_due) * 100, 0) AS INTEGER)), 0)
                  AS cents
           FROM orders WHERE escrow_released = 0"""
    ).fetchone()
    installment_held_row = db.execute(
        """SELECT COALESCE(SUM(CAST(ROUND(amount_paid * 100, 0) AS INTEGER)), 0) AS cents
           FROM installment_orders WHERE escrow_released = 0"""
    ).fetchone()

    commission_row = db.execute(
        """SELECT COALESCE(SUM(CAST(ROUND(amount * 100, 0) AS INTEGER)), 0) AS cents
           FROM wallet_transactions WHERE user_id = ? AND type = 'commission'""",
        (platform_wallet_user_id(),),
    ).fetchone()

    installment_row = db.execute(
        """SELECT
               SUM(CASE WHEN status = 'active' THEN 1 ELSE 0 END)    AS active,
               SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed
           FROM installment_orders"""
    ).fetchone()
    overdue_row = db.execute(
        "SELECT COUNT(*) AS cnt FROM installment_payments WHERE status = 'overdue'"
    ).fetchone()

    platform_balance = WalletService().get_balance(platform_wallet_user_id())

    return JSONResponse(content={
        "code": 1,
        "order_counts": order_counts,
        "escrow_held": f"{Decimal(_cents(held_row['cents'])) / 100:.2f}",
        "installment_escrow_held": f"{Decimal(_cents(installment_held_row['cents'])) / 100:.2f}",
        "commission_earned": f"{Decimal(_cents(commission_row['cents'])) / 100:.2f}",
        "platform_wallet_balance": f"{platform_balance:.2f}",
        "installments": {
            "active": installment_row["active"] or 0,
            "completed": installment_row["completed"] or 0,
            "overdue_payments": overdue_row["cnt"] or 0,
        },
    })


# ── 订单管理 ────────────────────────────────────────────────


def _build_order_filters(status: str | None, buyer_id: str | None, seller_id: str | None):
    conditions = []
    params = []
    if status:
        conditions.append("status = ?")
        params.append(status)
    if buyer_id:
        conditions.append("buyer_id = ?")
        params.append(buyer_id)
    if seller_id:
        conditions.append("seller_id = ?")
        params.append(seller_id)
    return conditions, params


@router.get("/orders")
async def order_list(
    admin: dict = Depends(get_current_admin),
    status: Optional[str] = Query(None),
    buyer_id: Optional[str] = Query(None),
    seller_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
):
    """订单列表接口（支持筛选和分页），返回 JSON。"""
    conditions, params = _build_order_filters(status, buyer_id, seller_id)
    where_clause = " AND ".join(conditions) if conditions else "1=1"

    db = get_db()
    try:
        total = db.execute(
            f"SELECT COUNT(*) AS cnt FROM orders WHERE {where_clause}", params
        ).fetchone()["cnt"]
        total_pages = max(1, math.ceil(total / per_page))

        offset = (page - 1) * per_page
        rows = db.execute(
            f"""SELECT id, buyer_id, seller_id, product_id, total_price, deposit_amount,
                       balance_due, status, delivered, balance_paid, escrow_released,
                       created_at
                FROM orders
                WHERE {where_clause}
                ORDER BY id DESC
                LIMIT ? OFFSET ?""",
            params + [per_page, offset],
        ).fetchall()
    finally:
        db.close()

    orders = [
        {
            **dict(r),
            "total_price": f"{Decimal(str(r['total_price'])):.2f}",
            "deposit_amount": f"{Decimal(str(r['deposit_amount'])):.2f}",
            "balance_due": f"{Decimal(str(r['balance_due'])):.2f}",
            "delivered": bool(r["delivered"]),
            "balance_paid": bool(r["balance_paid"]),
            "escrow_released": bool(r["escrow_released"]),
        }
        for r in rows
    ]
    return JSONResponse(content={
        "code": 1,
        "orders": orders,
        "total": total,
        "page": page,
        "per_page": per_page,
        "total_pages": total_pages,
    })


@router.get("/orders/{order_id}")
async def order_detail(order_id: int, admin: dict = Depends(get_current_admin)):
    """订单详情（不含配送码）及该订单的钱包流水。"""
    try:
        order = OrderService().get_order(order_id)
    except PaymentFlowError as e:
        return JSONResponse(
            status_code=404, content={"code": -1, "msg": str(e), "error": e.error_code}
        )

    db = get_db()
    try:
        tx_rows = db.execute(
            """SELECT user_id, type, amount, balance_after, created_at
               FROM wallet_transactions WHERE order_id = ? ORDER BY id ASC""",
            (order_id,),
        ).fetchall()
    finally:
        db.close()

    ledger = [
        {
            "user_id": r["user_id"],
            "type": r["type"],
            "amount": f"{Decimal(str(r['amount'])):.2f}",
            "balance_after": f"{Decimal(str(r['balance_after'])):.2f}",
            "created_at": r["created_at"],
        }
        for r in tx_rows
    ]
    return JSONResponse(content={"code": 1, "order": order.to_dict(), "ledger": ledger})


@router.post("/orders/{order_id}/release")
async def release_order(order_id: int, admin: dict = Depends(get_current_admin)):
    """手动释放托管资金（与自动释放同一引擎；已释放订单明确报错）。"""
    try:
        result = EscrowService().release_escrow_to_seller(order_id, strict=True)
    except PaymentFlowError as e:
        return error_response(e)
    return JSONResponse(content={"code": 1, "msg": "托管资金已释放", **result.to_dict()})


# ── 钱包与流水 ──────────────────────────────────────────────


class TopUpRequest(BaseModel):
    amount: Decimal
    reference: Optional[str] = None


@router.post("/wallets/{user_id}/topup")
async def topup_wallet(user_id: str, body: TopUpRequest, admin: dict = Depends(get_current_admin)):
    """管理员为用户钱包充值（线下收款后入账）。"""
    reference = body.reference or f"admin:{admin.get('sub')}"
    try:
        balance = WalletService().top_up(user_id, body.amount, reference=reference)
    except PaymentFlowError as e:
        return error_response(e)
    return JSONResponse(content={"code": 1, "user_id": user_id, "balance": f"{balance:.2f}"})


def _build_tx_filters(user_id: str | None, tx_type: str | None):
    conditions = []
    params = []
    if user_id:
        conditions.append("user_id = ?")
        params.append(user_id)
    if tx_type:
        conditions.append("type = ?")
        params.append(tx_type)
    return conditions, params


@router.get("/transactions/export")
async def export_transactions(
    admin: dict = Depends(get_current_admin),
    type: str = Query("commission"),
    user_id: Optional[str] = Query(None),
):
    """导出资金流水为 CSV 文件（默认导出平台佣金流水）。"""
    conditions, params = _build_tx_filters(user_id, type)
    where_clause = " AND ".join(conditions) if conditions else "1=1"

    db = get_db()
    try:
        rows = db.execute(
            f"""SELECT id, user_id, type, amount, balance_after, order_id, reference, note,
                       created_at
                FROM wallet_transactions
                WHERE {where_clause}
                ORDER BY id ASC""",
            params,
        ).fetchall()
    finally:
        db.close()

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow([
        "流水ID", "用户ID", "类型", "金额", "变动后余额", "订单ID", "关联单号", "备注", "时间",
    ])
    for r in rows:
        writer.writerow([
            r["id"], r["user_id"], r["type"],
            f"{Decimal(str(r['amount'])):.2f}", f"{Decimal(str(r['balance_after'])):.2f}",
            r["order_id"] or "", r["reference"] or "", r["note"] or "", r["created_at"],
        ])

    output.seek(0)
    return StreamingResponse(
        iter([output.getvalue()]),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={type}_transactions.csv"},
    )


@router.get("/transactions")
async def transaction_list(
    admin: dict = Depends(get_current_admin),
    type: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
):
    conditions, params = _build_tx_filters(user_id, type)
    where_clause = " AND ".join(conditions) if conditions else "1=1"

    db = get_db()
    try:
        total = db.execute(
            f"SELECT COUNT(*) AS cnt FROM wallet_transactions WHERE {where_clause}", params
        ).fetchone()["cnt"]
        rows = db.execute(
            f"""SELECT * FROM wallet_transactions WHERE {where_clause}
                ORDER BY id DESC LIMIT ? OFFSET ?""",
            params + [per_page, (page - 1) * per_page],
        ).fetchall()
    finally:
        db.close()

    transactions = [transaction_to_dict(row_to_transaction(r)) for r in rows]
    return JSONResponse(content={
        "code": 1,
        "transactions": transactions,
        "total": total,
        "page": page,
        "per_page": per_page,
        "total_pages": max(1, math.ceil(total / per_page)),
    })


# ── 系统设置 ────────────────────────────────────────────────


class ChangePasswordRequest(BaseModel):
    old_password: str
    new_password: str


class SettingsRequest(BaseModel):
    default_commission_rate: Optional[Decimal] = None
    default_deposit_percent: Optional[Decimal] = None


@router.get("/settings")
async def settings_page(admin: dict = Depends(get_current_admin)):
    """当前生效的平台默认佣金率与定金比例。"""
    return JSONResponse(content={"code": 1, **get_settings()})


@router.put("/settings")
async def update_settings(body: SettingsRequest, admin: dict = Depends(get_current_admin)):
    """修改平台默认佣金率 / 定金比例，取值范围 [0, 1]；只影响之后创建的订单。"""
    try:
        if body.default_commission_rate is not None:
            set_rate_setting(COMMISSION_RATE_KEY, body.default_commission_rate)
        if body.default_deposit_percent is not None:
            set_rate_setting(DEPOSIT_PERCENT_KEY, body.default_deposit_percent)
    except PlatformConfigError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, "msg": "设置已保存", **get_settings()})


@router.post("/settings/change-password")
async def change_password_route(
    body: ChangePasswordRequest,
    admin: dict = Depends(get_current_admin),
):
    """修改管理员密码。"""
    username = admin.get("sub")
    if not username:
        return JSONResponse(content={"code": -1, "msg": "无法识别当前用户"})

    db = get_db()
    try:
        row = db.execute(
            "SELECT id, password_hash FROM admin WHERE username = ?", (username,)
        ).fetchone()
        if not row:
            return JSONResponse(content={"code": -1, "msg": "用户不存在"})

        if not verify_password(body.old_password, row["password_hash"]):
            return JSONResponse(content={"code": -1, "msg": "原密码错误"})

        if len(body.new_password) < 6:
            return JSONResponse(content={"code": -1, "msg": "新密码长度不能少于6位"})

        db.execute(
            "UPDATE admin SET password_hash = ? WHERE id = ?",
            (hash_password(body.new_password), row["id"]),
        )
        db.commit()
        return JSONResponse(content={"code": 1, "msg": "密码修改成功"})
    finally:
        db.close()
