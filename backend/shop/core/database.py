"""
数据库连接模块
使用 SQLAlchemy 异步引擎
"""
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from pydantic import BaseModel
from shop.core.config import get_settings
import logging
import os

logger = logging.getLogger(__name__)
settings = get_settings()

SQLITE_PREFIX = "sqlite+aiosqlite:///"

# 确保 SQLite 数据目录存在
if settings.database_url.startswith(SQLITE_PREFIX):
    os.makedirs(os.path.dirname(settings.database_url.replace(SQLITE_PREFIX, "")) or "./data", exist_ok=True)

# 创建异步引擎
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,  # 调试模式下打印 SQL
    future=True
)

# 创建异步会话工厂
async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


class Base(DeclarativeBase):
    """ORM 基类"""
    pass


class PoolCapabilities(BaseModel):
    """
    卡密池能力标记，启动时解析一次

    - supports_reservation: cards 表是否有 reserved_order_id / reserved_at 列
      （旧部署没有这两列）
    - supports_skip_locked: 数据库是否支持 FOR UPDATE SKIP LOCKED，
      不支持时改用乐观的条件更新
    """
    supports_reservation: bool = True
    supports_skip_locked: bool = True


SKIP_LOCKED_DIALECTS = {"postgresql", "mysql", "mariadb", "oracle"}


def _inspect_capabilities(connection) -> PoolCapabilities:
    columns = set()
    inspector = inspect(connection)
    if inspector.has_table("cards"):
        columns = {col["name"] for col in inspector.get_columns("cards")}
    return PoolCapabilities(
        # 表还不存在时 create_all 会建出完整结构
        supports_reservation=not columns or {"reserved_order_id", "reserved_at"} <= columns,
        supports_skip_locked=connection.dialect.name in SKIP_LOCKED_DIALECTS,
    )


async def detect_capabilities(session: AsyncSession) -> PoolCapabilities:
    """根据当前库结构和方言解析卡密池能力"""
    capabilities = await session.run_sync(
        lambda sync_session: _inspect_capabilities(sync_session.connection())
    )
    if not capabilities.supports_reservation:
        logger.warning("cards 表缺少预占字段，卡密领取将不使用预占逻辑")
    if not capabilities.supports_skip_locked:
        logger.info("数据库不支持 SKIP LOCKED，卡密领取使用乐观更新")
    return capabilities


async def init_db():
    """初始化数据库（创建表）"""
    # 注册所有模型
    import shop.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
