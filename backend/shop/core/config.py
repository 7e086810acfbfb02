"""
应用配置模块
使用 pydantic-settings 从环境变量加载配置
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """应用配置类"""

    # 数据库
    database_url: str = "sqlite+aiosqlite:///./data/shop.db"

    # 服务器
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # 发货
    amount_tolerance: float = 0.01  # 实付金额与订单金额允许的误差
    reservation_ttl_seconds: int = 60  # 卡密预占有效期
    claim_max_attempts: int = 5  # 乐观领取的最大重试轮数

    # 外部 Token 发放服务
    token_issuer_url: str = ""
    token_issuer_username: str = ""
    token_issuer_password: str = ""
    token_issuer_timeout: float = 15.0
    token_credential_ttl_hours: int = 24  # 管理员 JWT 有效期
    token_refresh_margin_minutes: int = 60  # 提前刷新的时间
    token_label_prefix: str = "ldc-shop"

    # 支付回调共享密钥（为空时不校验）
    webhook_secret: str = ""

    # 定时任务
    enable_scheduler: bool = True
    reservation_sweep_interval_seconds: int = 60
    delivery_retry_interval_minutes: int = 5
    delivery_retry_batch_size: int = 50

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """获取配置单例（带缓存）"""
    return Settings()
