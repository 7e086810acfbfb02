"""
数字商品发货服务 - 后端服务入口
"""
from fastapi import FastAPI
from contextlib import asynccontextmanager
from shop.core.config import get_settings
from shop.core.database import init_db
from shop.api import api_router
from shop.services.fulfillment import fulfillment_service
from shop.services.scheduler import start_scheduler, stop_scheduler
from shop.services.token_issuer import token_issuer
import logging

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时
    logger.info("🚀 正在启动发货服务...")

    # 初始化数据库
    await init_db()
    logger.info("✅ 数据库初始化完成")

    # 解析卡密池能力（只在启动时检测一次）
    capabilities = await fulfillment_service.resolve_capabilities()
    logger.info(f"✅ 卡密池能力: {capabilities.model_dump()}")

    if not token_issuer.is_configured():
        logger.warning("⚠️ Token 发放服务未配置，Token 类商品将无法自动发货")

    # 启动定时任务
    if settings.enable_scheduler:
        start_scheduler()
        logger.info("✅ 定时任务已启动")

    yield

    # 关闭时
    if settings.enable_scheduler:
        stop_scheduler()
    await token_issuer.aclose()
    logger.info("👋 服务已关闭")


# 创建 FastAPI 应用
app = FastAPI(
    title="数字商品发货服务",
    description="支付确认后发放卡密或外部 Token",
    version="1.0.0",
    lifespan=lifespan,
)

# 注册路由 (API)
app.include_router(api_router)


@app.get("/")
async def root():
    """健康检查"""
    return {
        "service": "数字商品发货服务",
        "status": "running",
        "version": "1.0.0"
    }


@app.get("/health")
async def health_check():
    """健康检查端点"""
    return {"status": "healthy"}
