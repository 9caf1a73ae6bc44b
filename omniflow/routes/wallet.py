"""钱包与订阅接口路由。"""

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from omniflow.routes.common import error_response
from omniflow.services.auth import get_current_user
from omniflow.services.errors import PaymentFlowError
from omniflow.services.subscription_service import SubscriptionService, list_plans
from omniflow.services.wallet_service import WalletService, transaction_to_dict

router = APIRouter(prefix="/v1/wallet")


class SubscribeRequest(BaseModel):
    plan_name: str
    amount: Optional[Decimal] = None


@router.get("")
async def wallet_balance(user_id: str = Depends(get_current_user)):
    balance = WalletService().get_balance(user_id)
    return JSONResponse(content={"code": 1, "user_id": user_id, "balance": f"{balance:.2f}"})


@router.get("/transactions")
async def wallet_transactions(
    user_id: str = Depends(get_current_user),
    limit: int = Query(50, ge=1, le=500),
    type: Optional[str] = Query(None),
):
    txs = WalletService().list_transactions(user_id, limit=limit, tx_type=type)
    return JSONResponse(content={"code": 1, "transactions": [transaction_to_dict(t) for t in txs]})


@router.get("/plans")
async def subscription_plans():
    return JSONResponse(content={"code": 1, "plans": list_plans()})


@router.post("/subscribe")
async def subscribe(body: SubscribeRequest, user_id: str = Depends(get_current_user)):
    """用钱包余额开通/续期高级卖家订阅。"""
    try:
        sub = SubscriptionService().subscribe_with_wallet(user_id, body.plan_name, body.amount)
    except PaymentFlowError as e:
        return error_response(e)
    return JSONResponse(content={
        "code": 1,
        "msg": "订阅成功",
        "subscription": {
            "id": sub.id,
            "plan_name": sub.plan_name,
            "amount": f"{sub.amount:.2f}",
            "starts_at": sub.starts_at,
            "expires_at": sub.expires_at,
        },
    })


@router.get("/subscription")
async def subscription_status(user_id: str = Depends(get_current_user)):
    status = SubscriptionService().get_subscription_status(user_id)
    return JSONResponse(content={"code": 1, **status})
