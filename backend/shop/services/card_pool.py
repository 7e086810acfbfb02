"""
卡密池服务
负责卡密的预占、领取和过期预占清理

并发模型：
- 支持 SKIP LOCKED 的数据库：候选行加排他锁，被其他事务锁住的行直接跳过，不排队等待
- 不支持的数据库（SQLite）：乐观更新，UPDATE 时重新断言候选条件，
  被并发事务抢走的行不会被更新，下一轮重新挑选

调用方负责事务边界：这里的函数只在传入的会话上执行语句，不提交
"""
from sqlalchemy import select, update, or_, func, false
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime, timedelta
from typing import Optional
from shop.core.config import get_settings
from shop.core.database import PoolCapabilities
from shop.core.exceptions import ReservationUnsupportedError
from shop.models import Card
import logging

logger = logging.getLogger(__name__)


def _unused():
    return func.coalesce(Card.is_used, false()) == false()


def _available_criteria(product_id: str, capabilities: PoolCapabilities, now: datetime) -> list:
    """未使用且未被有效预占的卡密"""
    criteria = [Card.product_id == product_id, _unused()]
    if capabilities.supports_reservation:
        cutoff = now - timedelta(seconds=get_settings().reservation_ttl_seconds)
        criteria.append(or_(Card.reserved_at.is_(None), Card.reserved_at < cutoff))
    return criteria


def _consume_values(capabilities: PoolCapabilities, now: datetime) -> dict:
    values = {"is_used": True, "used_at": now}
    if capabilities.supports_reservation:
        values.update(reserved_order_id=None, reserved_at=None)
    return values


def candidate_ids_stmt(criteria: list, limit: int, capabilities: PoolCapabilities):
    """挑选候选卡密 id 的查询，支持时加 FOR UPDATE SKIP LOCKED"""
    stmt = select(Card.id).where(*criteria).order_by(Card.id).limit(limit)
    if capabilities.supports_skip_locked:
        stmt = stmt.with_for_update(skip_locked=True)
    return stmt


async def _claim_matching(
    session: AsyncSession,
    criteria: list,
    limit: int,
    values: dict,
    capabilities: PoolCapabilities,
) -> list[str]:
    """
    挑选至多 limit 张满足 criteria 的卡密并更新为 values

    返回被更新行的卡密
    """
    claimed = []
    max_attempts = get_settings().claim_max_attempts

    for attempt in range(max_attempts):
        remaining = limit - len(claimed)
        if remaining <= 0:
            break

        stmt = candidate_ids_stmt(criteria, remaining, capabilities)
        ids = list((await session.scalars(stmt)).all())
        if not ids:
            break

        # 条件更新：重新带上候选条件，已被其他事务领走的行不会命中
        result = await session.execute(
            update(Card)
            .where(Card.id.in_(ids), *criteria)
            .values(**values)
            .returning(Card.id, Card.card_key)
            .execution_options(synchronize_session=False)
        )
        # RETURNING 的行序不保证，按 id 排序保持先进先出
        rows = sorted(result.all(), key=lambda row: row[0])
        claimed.extend(row[1] for row in rows)

        lost = len(ids) - len(rows)
        if lost:
            logger.debug(f"第 {attempt + 1} 轮领取有 {lost} 张卡密被并发事务抢先，重新挑选")
        elif len(ids) < remaining:
            # 库存已经不够，没必要再查一次
            break

    return claimed


async def claim_reserved_cards(
    session: AsyncSession,
    order_id: str,
    limit: int,
    capabilities: PoolCapabilities,
    now: Optional[datetime] = None,
) -> list[str]:
    """领取已为该订单预占的卡密"""
    if not capabilities.supports_reservation or limit <= 0:
        return []
    now = now or datetime.now()
    criteria = [Card.reserved_order_id == order_id, _unused()]
    return await _claim_matching(
        session, criteria, limit, _consume_values(capabilities, now), capabilities
    )


async def claim_cards(
    session: AsyncSession,
    order_id: str,
    product_id: str,
    quantity: int,
    capabilities: PoolCapabilities,
    now: Optional[datetime] = None,
) -> list[str]:
    """
    为订单领取 quantity 张卡密，标记为已使用

    1. 先领取已为该订单预占的卡密
    2. 不足部分从公共池中挑选未使用、未被有效预占的卡密

    库存不足时返回实际领取到的卡密（可能为空），不抛异常
    """
    now = now or datetime.now()

    keys = await claim_reserved_cards(session, order_id, quantity, capabilities, now)

    if len(keys) < quantity:
        needed = quantity - len(keys)
        logger.info(f"[Fulfill] Order {order_id}: 已预占 {len(keys)} 张，还需 {needed} 张")
        keys += await _claim_matching(
            session,
            _available_criteria(product_id, capabilities, now),
            needed,
            _consume_values(capabilities, now),
            capabilities,
        )

    logger.info(f"[Fulfill] Order {order_id}: Cards claimed: {len(keys)}/{quantity}")
    return keys


async def reserve_cards(
    session: AsyncSession,
    order_id: str,
    product_id: str,
    quantity: int,
    capabilities: PoolCapabilities,
    now: Optional[datetime] = None,
) -> int:
    """
    为订单预占卡密（软锁，超时自动失效）

    已有的预占会被续期而不是重复预占；返回该订单当前持有的预占数量
    """
    if not capabilities.supports_reservation:
        raise ReservationUnsupportedError("cards 表缺少预占字段，无法预占卡密")

    now = now or datetime.now()

    # 续期已有预占
    result = await session.execute(
        update(Card)
        .where(Card.reserved_order_id == order_id, _unused())
        .values(reserved_at=now)
        .returning(Card.id)
        .execution_options(synchronize_session=False)
    )
    held = len(result.scalars().all())

    if held < quantity:
        newly_reserved = await _claim_matching(
            session,
            _available_criteria(product_id, capabilities, now),
            quantity - held,
            {"reserved_order_id": order_id, "reserved_at": now},
            capabilities,
        )
        held += len(newly_reserved)

    logger.info(f"订单 {order_id} 预占卡密 {held}/{quantity}")
    return held


async def release_expired_reservations(
    session: AsyncSession,
    capabilities: PoolCapabilities,
    now: Optional[datetime] = None,
) -> int:
    """清理过期且未被使用的预占，返回释放的数量"""
    if not capabilities.supports_reservation:
        return 0

    now = now or datetime.now()
    cutoff = now - timedelta(seconds=get_settings().reservation_ttl_seconds)
    result = await session.execute(
        update(Card)
        .where(_unused(), Card.reserved_at.isnot(None), Card.reserved_at < cutoff)
        .values(reserved_order_id=None, reserved_at=None)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount
