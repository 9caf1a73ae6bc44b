"""站内通知接口路由。"""

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from omniflow.services.auth import get_current_user
from omniflow.services.notification_service import NotificationService, notification_to_dict

router = APIRouter(prefix="/v1/notifications")


@router.get("")
async def list_notifications(
    user_id: str = Depends(get_current_user),
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
):
    items = NotificationService().list_notifications(user_id, unread_only=unread_only, limit=limit)
    return JSONResponse(content={
        "code": 1,
        "notifications": [notification_to_dict(n) for n in items],
    })


@router.post("/{notification_id}/read")
async def mark_read(notification_id: int, user_id: str = Depends(get_current_user)):
    if not NotificationService().mark_read(notification_id, user_id):
        return JSONResponse(content={"code": -1, "msg": "通知不存在"})
    return JSONResponse(content={"code": 1, "msg": "已标记为已读"})
