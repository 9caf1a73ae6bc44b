"""
OmniFlow 应用入口：FastAPI 应用实例、路由注册、生命周期和后台任务。
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

# 日志配置
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    force=True,
)

logger = logging.getLogger(__name__)

ESCROW_SWEEP_SECONDS = 60
INSTALLMENT_OVERDUE_SECONDS = 300
PUSH_SCAN_SECONDS = 30


# ── 后台任务 ──────────────────────────────────────────────

async def _escrow_sweep_task() -> None:
    """定期释放已确认收货且已付清的订单（每 60 秒）。"""
    from omniflow.services.escrow_service import EscrowService

    svc = EscrowService()
    while True:
        try:
            svc.sweep()
            logger.debug("托管巡检完成")
        except Exception as e:
            logger.error("托管巡检异常: %s", e)
        await asyncio.sleep(ESCROW_SWEEP_SECONDS)


async def _installment_overdue_task() -> None:
    """定期将到期未付的分期款项标记为逾期（每 300 秒）。"""
    from omniflow.services.installment_service import InstallmentService

    svc = InstallmentService()
    while True:
        try:
            count = svc.mark_overdue()
            if count:
                logger.info("分期逾期标记: %d 笔", count)
        except Exception as e:
            logger.error("分期逾期检查异常: %s", e)
        await asyncio.sleep(INSTALLMENT_OVERDUE_SECONDS)


async def _push_delivery_task() -> None:
    """
    定期投递/重试站内通知推送（每 30 秒扫描一次）。

    未配置 PUSH_WEBHOOK_URL 时跳过。重试间隔：[30, 120, 600] 秒。
    """
    from omniflow.services.notification_service import NotificationService, push_webhook_url

    svc = NotificationService()
    while True:
        try:
            if push_webhook_url():
                for notification_id in svc.due_for_push():
                    try:
                        svc.send_push(notification_id)
                    except Exception as e:
                        logger.error(
                            "推送投递异常 (notification_id=%d): %s", notification_id, e
                        )
        except Exception as e:
            logger.error("推送任务异常: %s", e)

        await asyncio.sleep(PUSH_SCAN_SECONDS)


# ── Lifespan ──────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：启动时初始化数据库并启动后台任务。"""
    from omniflow.database import init_db

    init_db()
    logger.info("数据库初始化完成")

    tasks = []
    if os.environ.get("TESTING") != "1":
        tasks.append(asyncio.create_task(_escrow_sweep_task()))
        tasks.append(asyncio.create_task(_installment_overdue_task()))
        tasks.append(asyncio.create_task(_push_delivery_task()))
        logger.info("后台任务已启动：托管巡检、分期逾期检查、通知推送")

    yield

    for t in tasks:
        t.cancel()
        try:
            await t
        except asyncio.CancelledError:
            pass


app = FastAPI(title="OmniFlow", description="定金托管交易后端", lifespan=lifespan)

# ── CORS 中间件（开发环境跨域） ────────────────────────────

if os.environ.get("CORS_ENABLED", "0") == "1":
    from fastapi.middleware.cors import CORSMiddleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "http://localhost:5173").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# ── 路由注册 ──────────────────────────────────────────────

from omniflow.routes.products import router as products_router
from omniflow.routes.orders import router as orders_router
from omniflow.routes.wallet import router as wallet_router
from omniflow.routes.installments import router as installments_router
from omniflow.routes.notifications import router as notifications_router
from omniflow.routes.admin import router as admin_router

app.include_router(products_router)
app.include_router(orders_router)
app.include_router(wallet_router)
app.include_router(installments_router)
app.include_router(notifications_router)
app.include_router(admin_router)


# ── 健康检查 ──────────────────────────────────────────────

@app.get("/health")
async def health_check():
    return {"status": "ok"}
