"""分期订单接口路由。"""

from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from omniflow.routes.common import error_response
from omniflow.services.auth import get_current_user
from omniflow.services.errors import PaymentFlowError
from omniflow.services.installment_service import InstallmentService

router = APIRouter(prefix="/v1/installments")


class StartInstallmentRequest(BaseModel):
    product_id: int
    quantity: int = 1
    variant: Optional[str] = None
    delivery_method: Optional[str] = None
    delivery_location: Optional[str] = None
    contact_phone: Optional[str] = None


class PayInstallmentRequest(BaseModel):
    extra: bool = False


@router.post("")
async def start_installment(body: StartInstallmentRequest, user_id: str = Depends(get_current_user)):
    """创建分期订单并支付首付。"""
    try:
        order = InstallmentService().start_installment_order(
            buyer_id=user_id,
            product_id=body.product_id,
            quantity=body.quantity,
            variant=body.variant,
            delivery_method=body.delivery_method,
            delivery_location=body.delivery_location,
            contact_phone=body.contact_phone,
        )
    except PaymentFlowError as e:
        return error_response(e)
    return JSONResponse(content={"code": 1, "installment_order": order.to_dict()})


@router.get("")
async def list_installments(user_id: str = Depends(get_current_user)):
    orders = InstallmentService().list_installment_orders(user_id)
    return JSONResponse(content={"code": 1, "installment_orders": [o.to_dict() for o in orders]})


@router.post("/{order_id}/pay")
async def pay_installment(
    order_id: int,
    body: PayInstallmentRequest | None = None,
    user_id: str = Depends(get_current_user),
):
    """支付下一期；extra=true 一次付清剩余全部期数。"""
    extra = body.extra if body else False
    try:
        order = InstallmentService().record_installment_payment(user_id, order_id, extra=extra)
    except PaymentFlowError as e:
        return error_response(e)
    return JSONResponse(content={"code": 1, "installment_order": order.to_dict()})
