"""
订单接口路由：定金下单、订单查询、卖家状态推进、OTP 确认收货、
尾款支付、托管释放、评价。

确认收货与付清尾款之后都会尝试一次托管释放；释放条件未满足时静默跳过，
最终由后台巡检兜底。
"""

import logging
from decimal import Decimal
from typing import Optional, Union

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from omniflow.models.schemas import DepositPolicy
from omniflow.routes.common import error_response
from omniflow.services.auth import get_current_user
from omniflow.services.delivery_service import DeliveryService
from omniflow.services.errors import PaymentFlowError
from omniflow.services.escrow_service import EscrowService
from omniflow.services.order_service import OrderService
from omniflow.services.settlement_service import SettlementService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/orders")


class CreateOrderRequest(BaseModel):
    product_id: int
    quantity: int = 1
    deposit_percent: Optional[Decimal] = None
    deposit_amount: Optional[Decimal] = None
    variant: Optional[str] = None
    delivery_method: Optional[str] = None
    delivery_location: Optional[str] = None
    contact_phone: Optional[str] = None


class UpdateStatusRequest(BaseModel):
    status: str


class ConfirmDeliveryRequest(BaseModel):
    # 6 位数字；也接受 JSON 数字，服务层按 6 位补零
    otp: Union[str, int]


class RatingRequest(BaseModel):
    rating: int


@router.post("")
async def create_order(body: CreateOrderRequest, user_id: str = Depends(get_current_user)):
    """定金下单：扣库存、扣定金、生成配送码，一步完成。"""
    policy = DepositPolicy(percent=body.deposit_percent, fixed_amount=body.deposit_amount)
    try:
        order = OrderService().create_order_with_deposit(
            buyer_id=user_id,
            product_id=body.product_id,
            quantity=body.quantity,
            policy=policy,
            variant=body.variant,
            delivery_method=body.delivery_method,
            delivery_location=body.delivery_location,
            contact_phone=body.contact_phone,
        )
    except PaymentFlowError as e:
        return error_response(e)
    return JSONResponse(content={"code": 1, "order": order.to_dict()})


@router.get("")
async def list_orders(
    user_id: str = Depends(get_current_user),
    role: str = Query("buyer"),
    status: Optional[str] = Query(None),
):
    """按买家（默认）或卖家身份列出自己的订单。"""
    if role not in ("buyer", "seller"):
        return JSONResponse(content={"code": -1, "msg": f"不支持的角色: {role}"})
    orders = OrderService().list_orders(user_id, role=role, status=status)
    return JSONResponse(content={"code": 1, "orders": [o.to_dict() for o in orders]})


@router.get("/{order_id}")
async def order_detail(order_id: int, user_id: str = Depends(get_current_user)):
    try:
        order = OrderService().get_order_for_party(order_id, user_id)
    except PaymentFlowError as e:
        return error_response(e)
    return JSONResponse(content={"code": 1, "order": order.to_dict()})


@router.get("/{order_id}/otp")
async def order_otp(order_id: int, user_id: str = Depends(get_current_user)):
    """买家读取配送码，交给配送员当面核验。"""
    try:
        otp = OrderService().get_delivery_otp(order_id, user_id)
    except PaymentFlowError as e:
        return error_response(e)
    return JSONResponse(content={"code": 1, "order_id": order_id, "otp": otp})


@router.put("/{order_id}/status")
async def update_status(
    order_id: int, body: UpdateStatusRequest, user_id: str = Depends(get_current_user)
):
    try:
        order = OrderService().update_order_status(order_id, user_id, body.status)
    except PaymentFlowError as e:
        return error_response(e)
    return JSONResponse(content={"code": 1, "order": order.to_dict()})


@router.post("/{order_id}/confirm-delivery")
async def confirm_delivery(
    order_id: int, body: ConfirmDeliveryRequest, user_id: str = Depends(get_current_user)
):
    """买家提交配送码确认收货；若尾款已付清，随即释放托管资金。"""
    try:
        order = DeliveryService().confirm_delivery(order_id, body.otp, buyer_id=user_id)
    except PaymentFlowError as e:
        return error_response(e)

    release = EscrowService().try_release(order_id)
    if release and release.released:
        order = OrderService().get_order(order_id)
    return JSONResponse(content={
        "code": 1,
        "msg": "已确认收货",
        "order": order.to_dict(),
        "escrow": release.to_dict() if release else None,
    })


@router.post("/{order_id}/pay-balance")
async def pay_balance(order_id: int, user_id: str = Depends(get_current_user)):
    """买家付清尾款；若已确认收货，随即释放托管资金。"""
    try:
        order = SettlementService().pay_remaining_balance(order_id, user_id)
    except PaymentFlowError as e:
        return error_response(e)

    release = EscrowService().try_release(order_id)
    if release and release.released:
        order = OrderService().get_order(order_id)
    return JSONResponse(content={
        "code": 1,
        "msg": "尾款支付成功",
        "order": order.to_dict(),
        "escrow": release.to_dict() if release else None,
    })


@router.post("/{order_id}/release")
async def release_escrow(order_id: int, user_id: str = Depends(get_current_user)):
    """
    买卖双方均可触发释放（幂等）。已释放的订单返回 already_released=true。
    """
    try:
        OrderService().get_order_for_party(order_id, user_id)
        result = EscrowService().release_escrow_to_seller(order_id)
    except PaymentFlowError as e:
        return error_response(e)
    return JSONResponse(content={"code": 1, **result.to_dict()})


@router.post("/{order_id}/rating")
async def rate_order(order_id: int, body: RatingRequest, user_id: str = Depends(get_current_user)):
    try:
        order = OrderService().rate_order(order_id, user_id, body.rating)
    except PaymentFlowError as e:
        return error_response(e)
    return JSONResponse(content={"code": 1, "order": order.to_dict()})
