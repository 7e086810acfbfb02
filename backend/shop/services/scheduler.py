"""
定时任务模块
- 清理过期的卡密预占
- 补发已支付但未发齐的订单
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from shop.core.config import get_settings
from shop.services.card_pool import release_expired_reservations
from shop.services.fulfillment import fulfillment_service
import logging

logger = logging.getLogger(__name__)
settings = get_settings()

scheduler = AsyncIOScheduler()


async def sweep_expired_reservations(service=None):
    """释放超过有效期仍未确认的预占"""
    service = service or fulfillment_service
    try:
        capabilities = await service.get_capabilities()
        async with service.session_factory() as db:
            released = await release_expired_reservations(db, capabilities)
            await db.commit()
        if released > 0:
            logger.info(f"清理过期预占完成，释放 {released} 张卡密")
    except Exception:
        logger.exception("清理过期预占时发生错误")


async def retry_undelivered_orders(service=None):
    """补发库存不足或 Token 生成失败的订单"""
    service = service or fulfillment_service
    try:
        await service.retry_undelivered_orders()
    except Exception:
        logger.exception("补发订单时发生错误")


def start_scheduler():
    """启动定时任务调度器"""
    scheduler.add_job(
        sweep_expired_reservations,
        trigger=IntervalTrigger(seconds=settings.reservation_sweep_interval_seconds),
        id="sweep_expired_reservations",
        name="清理过期预占",
        replace_existing=True
    )

    scheduler.add_job(
        retry_undelivered_orders,
        trigger=IntervalTrigger(minutes=settings.delivery_retry_interval_minutes),
        id="retry_undelivered_orders",
        name="补发未发齐订单",
        replace_existing=True
    )

    scheduler.start()
    logger.info("定时任务调度器已启动")


def stop_scheduler():
    """停止定时任务调度器"""
    scheduler.shutdown()
    logger.info("定时任务调度器已停止")
