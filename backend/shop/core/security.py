"""
安全防护模块
用于校验支付回调来源
"""
from fastapi import Header, HTTPException, status
from typing import Optional
import secrets
import logging
from shop.core.config import get_settings

logger = logging.getLogger(__name__)


async def verify_webhook_secret(
    x_webhook_secret: Optional[str] = Header(None, description="支付回调共享密钥"),
):
    """
    支付回调校验依赖
    未配置 webhook_secret 时直接放行
    """
    settings = get_settings()
    if not settings.webhook_secret:
        return True

    # 使用 secrets.compare_digest 防止时序攻击
    if x_webhook_secret is None or not secrets.compare_digest(
        x_webhook_secret, settings.webhook_secret
    ):
        logger.warning("安全警告: 支付回调密钥校验失败")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="回调签名无效",
        )
    return True
