"""店铺与商品接口路由。"""

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from omniflow.routes.common import error_response
from omniflow.services.auth import get_current_user
from omniflow.services.errors import PaymentFlowError
from omniflow.services.product_service import ProductService, product_to_dict

router = APIRouter(prefix="/v1")


class CreateStoreRequest(BaseModel):
    name: str
    commission_rate: Optional[Decimal] = None


class CreateProductRequest(BaseModel):
    name: str
    price: Decimal
    stock_quantity: int
    store_id: Optional[int] = None
    discount: Decimal = Decimal("0")
    commission_rate: Optional[Decimal] = None
    deposit_percent: Optional[Decimal] = None
    delivery_fee: Decimal = Decimal("0")
    installment_plan: Optional[dict] = None


class UpdateProductRequest(BaseModel):
    action: str  # "toggle" or "restock"
    active: int | None = None  # 0 or 1, required when action="toggle"
    quantity: int | None = None  # required when action="restock"


@router.post("/stores")
async def create_store(body: CreateStoreRequest, user_id: str = Depends(get_current_user)):
    try:
        store = ProductService().create_store(user_id, body.name, body.commission_rate)
    except PaymentFlowError as e:
        return error_response(e)
    return JSONResponse(content={
        "code": 1,
        "store": {
            "id": store.id,
            "owner_id": store.owner_id,
            "name": store.name,
            "commission_rate": (
                str(store.commission_rate) if store.commission_rate is not None else None
            ),
            "created_at": store.created_at,
        },
    })


@router.post("/products")
async def create_product(body: CreateProductRequest, user_id: str = Depends(get_current_user)):
    try:
        product = ProductService().create_product(
            owner_id=user_id,
            name=body.name,
            price=body.price,
            stock_quantity=body.stock_quantity,
            store_id=body.store_id,
            discount=body.discount,
            commission_rate=body.commission_rate,
            deposit_percent=body.deposit_percent,
            delivery_fee=body.delivery_fee,
            installment_plan=body.installment_plan,
        )
    except PaymentFlowError as e:
        return error_response(e)
    return JSONResponse(content={"code": 1, "product": product_to_dict(product)})


@router.get("/products")
async def list_products(
    owner_id: Optional[str] = Query(None),
    include_inactive: bool = Query(False),
):
    """商品目录，公开接口。include_inactive 仅用于卖家查看自己的下架商品。"""
    products = ProductService().list_products(
        owner_id=owner_id, active_only=not (include_inactive and owner_id),
    )
    return JSONResponse(content={"code": 1, "products": [product_to_dict(p) for p in products]})


@router.get("/products/{product_id}")
async def product_detail(product_id: int):
    try:
        product = ProductService().get_product(product_id)
    except PaymentFlowError as e:
        return error_response(e)
    return JSONResponse(content={"code": 1, "product": product_to_dict(product)})


@router.put("/products/{product_id}")
async def update_product(
    product_id: int, body: UpdateProductRequest, user_id: str = Depends(get_current_user)
):
    """商品所有者上下架或补货。"""
    svc = ProductService()
    try:
        if body.action == "toggle":
            if body.active is None:
                return JSONResponse(content={"code": -1, "msg": "缺少 active 参数"})
            svc.toggle_product(product_id, user_id, bool(body.active))
            status_text = "上架" if body.active else "下架"
            return JSONResponse(content={"code": 1, "msg": f"商品已{status_text}"})
        elif body.action == "restock":
            if body.quantity is None:
                return JSONResponse(content={"code": -1, "msg": "缺少 quantity 参数"})
            stock = svc.restock(product_id, user_id, body.quantity)
            return JSONResponse(content={"code": 1, "msg": "补货成功", "stock_quantity": stock})
        else:
            return JSONResponse(content={"code": -1, "msg": f"未知操作: {body.action}"})
    except PaymentFlowError as e:
        return error_response(e)
