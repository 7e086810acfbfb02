"""
订单发货服务
支付确认后为订单发放卡密或 Token，每个订单只会成功领取一次

入口 process_order_fulfillment 由支付回调 / 轮询调用
"""
from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from pydantic import BaseModel
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional, Union
from shop.core.config import get_settings
from shop.core.database import async_session, detect_capabilities, PoolCapabilities
from shop.core.exceptions import OrderNotFoundError, AmountMismatchError, InvalidQuantityError
from shop.models import Order, OrderStatus, Product, FulfillmentType
from shop.models.order import OPEN_STATUSES
from shop.services.card_pool import claim_cards
from shop.services.token_issuer import TokenIssuerClient, token_issuer
import logging

logger = logging.getLogger(__name__)

PROCESSED = "processed"
ALREADY_PROCESSED = "already_processed"


class FulfillmentResult(BaseModel):
    """发货结果"""
    success: bool
    status: str
    order_status: Optional[str] = None
    delivered: int = 0


class FulfillmentService:
    """订单发货服务"""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        issuer: Optional[TokenIssuerClient] = None,
        capabilities: Optional[PoolCapabilities] = None,
    ):
        self.session_factory = session_factory or async_session
        self.issuer = issuer or token_issuer
        self.capabilities = capabilities
        # 正在调用外部服务生成 Token 的订单
        self._issuing: set[str] = set()

    async def resolve_capabilities(self) -> PoolCapabilities:
        """解析卡密池能力（启动时调用一次）"""
        async with self.session_factory() as session:
            self.capabilities = await detect_capabilities(session)
        return self.capabilities

    async def get_capabilities(self) -> PoolCapabilities:
        if self.capabilities is None:
            await self.resolve_capabilities()
        return self.capabilities

    @staticmethod
    def _verify_amount(order: Order, paid_amount: Union[float, str, Decimal]):
        """校验实付金额（防止少付）"""
        expected = Decimal(str(order.amount))
        try:
            paid = Decimal(str(paid_amount))
        except InvalidOperation:
            raise AmountMismatchError(order.order_id, expected, paid_amount)
        if not paid.is_finite() or abs(paid - expected) > Decimal(str(get_settings().amount_tolerance)):
            raise AmountMismatchError(order.order_id, expected, paid)

    @staticmethod
    async def _fulfillment_type(session: AsyncSession, product_id: str) -> FulfillmentType:
        product = await session.get(Product, product_id)
        if product is None or not product.fulfillment_type:
            return FulfillmentType.CARD
        return FulfillmentType(product.fulfillment_type)

    @staticmethod
    async def _mark_paid(session: AsyncSession, order: Order, trade_no: str, now: datetime) -> bool:
        """
        pending/cancelled -> paid 的条件更新

        并发的重复回调中只有一个能更新成功，其余返回 False
        """
        result = await session.execute(
            update(Order)
            .where(Order.id == order.id, Order.status.in_(OPEN_STATUSES))
            .values(status=OrderStatus.PAID.value, paid_at=now, trade_no=trade_no)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False
        await session.refresh(order)
        return True

    @staticmethod
    async def _store_delivery(
        session: AsyncSession,
        order: Order,
        previous: Optional[str],
        keys: list[str],
        now: datetime,
    ) -> Optional[str]:
        """
        写入已发出的卡密，全部发齐则标记为 delivered

        以 previous（读到的 card_key）做比较更新，订单被并发修改时返回 None
        """
        delivered = len(keys) >= order.units
        values = {
            "card_key": "\n".join(keys),
            "status": OrderStatus.DELIVERED.value if delivered else OrderStatus.PAID.value,
        }
        if delivered:
            values["delivered_at"] = now

        unchanged = Order.card_key.is_(None) if previous is None else Order.card_key == previous
        result = await session.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == OrderStatus.PAID.value, unchanged)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None
        return values["status"]

    def _token_label(self, order: Order, index: int) -> str:
        """确定性的 Token 名称，重试时同一单位得到同一名称"""
        label = f"{get_settings().token_label_prefix}-{order.order_id}"
        if order.units > 1:
            label += f"-{index + 1}"
        return label

    async def _deliver_tokens(self, order: Order, locked: Optional[AsyncSession] = None) -> FulfillmentResult:
        """
        逐个调用外部服务为订单生成 Token

        任一单位失败（用户未注册或临时错误）即停止，已生成的 Token 照常记录，
        未发齐的订单保持 paid 以便之后重试。

        同一订单同时只允许一个发放流程：进入后重新读取订单，之前的流程已写入的
        Token 不会被重复生成。locked 为持有订单行锁的会话时，直接沿用它读取和写入，
        行锁一直保持到写入完成。
        """
        if order.order_id in self._issuing:
            logger.info(f"[Fulfill] Order {order.order_id}: Token 正在生成中，跳过")
            return FulfillmentResult(success=True, status=ALREADY_PROCESSED, order_status=order.status)

        self._issuing.add(order.order_id)
        try:
            if locked is not None:
                return await self._issue_tokens(locked, order)
            async with self.session_factory() as session:
                current = await session.scalar(select(Order).where(Order.id == order.id))
            async with self.session_factory() as session:
                return await self._issue_tokens(session, current)
        finally:
            self._issuing.discard(order.order_id)

    async def _issue_tokens(self, session: AsyncSession, order: Order) -> FulfillmentResult:
        issued = order.delivered_keys
        if order.status != OrderStatus.PAID.value or len(issued) >= order.units:
            return FulfillmentResult(
                success=True, status=ALREADY_PROCESSED,
                order_status=order.status, delivered=len(issued),
            )

        if not order.user_id:
            logger.error(f"[Fulfill] Order {order.order_id}: 订单没有 userId，无法生成 Token")
            return FulfillmentResult(
                success=True, status=PROCESSED,
                order_status=OrderStatus.PAID.value, delivered=len(issued),
            )

        previous = order.card_key
        new_tokens = []
        for index in range(len(issued), order.units):
            result = await self.issuer.create_token(order.user_id, self._token_label(order, index))
            if result.success and result.token:
                new_tokens.append(result.token)
                continue
            if result.user_not_registered:
                logger.warning(f"[Fulfill] Order {order.order_id}: 用户 {order.user_id} 尚未注册，稍后重试")
            else:
                logger.error(f"[Fulfill] Order {order.order_id}: Token 生成失败: {result.error}")
            break

        keys = issued + new_tokens
        if not new_tokens:
            logger.info(f"[Fulfill] Order {order.order_id}: 未生成 Token，保持 paid")
            return FulfillmentResult(
                success=True, status=PROCESSED,
                order_status=OrderStatus.PAID.value, delivered=len(keys),
            )

        status = await self._store_delivery(session, order, previous, keys, datetime.now())
        await session.commit()

        if status is None:
            logger.error(
                f"[Fulfill] Order {order.order_id}: 订单已被并发修改，"
                f"{len(new_tokens)} 个新 Token 未能写入"
            )
            return FulfillmentResult(success=True, status=ALREADY_PROCESSED)

        logger.info(f"[Fulfill] Order {order.order_id}: Token 已发放 ({len(keys)}/{order.units})")
        return FulfillmentResult(success=True, status=PROCESSED, order_status=status, delivered=len(keys))

    async def process_order_fulfillment(
        self,
        order_id: str,
        paid_amount: Union[float, str, Decimal],
        trade_no: str,
    ) -> FulfillmentResult:
        """
        支付确认后的发货入口

        流程：
        1. 查订单，不存在抛 OrderNotFoundError
        2. 校验金额（误差 0.01 内），不符抛 AmountMismatchError
        3. 订单已 paid/delivered：幂等返回 already_processed
        4. 纯支付商品：只改为 paid
        5. Token 商品：调用外部服务生成 Token
        6. 卡密商品：同一事务内领取预占卡密 + 公共池卡密，库存不足时保持 paid
        """
        capabilities = await self.get_capabilities()
        now = datetime.now()

        async with self.session_factory() as session:
            order = await session.scalar(select(Order).where(Order.order_id == order_id))
            if order is None:
                raise OrderNotFoundError(order_id)

            self._verify_amount(order, paid_amount)
            if order.quantity is not None and order.quantity < 0:
                raise InvalidQuantityError(order_id, order.quantity)

            if order.status not in OPEN_STATUSES:
                logger.info(f"[Fulfill] Order {order_id} 已处理过 ({order.status})，跳过")
                return FulfillmentResult(
                    success=True, status=ALREADY_PROCESSED,
                    order_status=order.status, delivered=len(order.delivered_keys),
                )

            kind = await self._fulfillment_type(session, order.product_id)

            if not await self._mark_paid(session, order, trade_no, now):
                await session.rollback()
                logger.info(f"[Fulfill] Order {order_id} 正在被其他请求处理，跳过")
                return FulfillmentResult(success=True, status=ALREADY_PROCESSED)

            if kind == FulfillmentType.PAYMENT:
                await session.commit()
                logger.info(f"[Fulfill] Order {order_id}: 支付订单已标记为 paid")
                return FulfillmentResult(success=True, status=PROCESSED, order_status=OrderStatus.PAID.value)

            if kind == FulfillmentType.TOKEN:
                # 先提交 paid 状态，Token 生成不在事务内
                await session.commit()
                return await self._deliver_tokens(order)

            keys = await claim_cards(session, order_id, order.product_id, order.units, capabilities, now)
            status = OrderStatus.PAID.value
            if keys:
                status = await self._store_delivery(session, order, order.card_key, keys, now)
                if status is None:
                    await session.rollback()
                    logger.warning(f"[Fulfill] Order {order_id} 发货时订单已被并发修改，放弃本次领取")
                    return FulfillmentResult(success=True, status=ALREADY_PROCESSED)
            await session.commit()

        if status == OrderStatus.DELIVERED.value:
            logger.info(f"[Fulfill] Order {order_id} delivered successfully!")
        else:
            logger.warning(f"[Fulfill] Order {order_id} marked as paid (库存不足 {len(keys)}/{order.units})")
        return FulfillmentResult(success=True, status=PROCESSED, order_status=status, delivered=len(keys))

    async def retry_undelivered(self, order_id: str) -> FulfillmentResult:
        """
        继续为已支付但未发齐的订单发货

        卡密订单补领剩余数量并追加到 card_key；Token 订单从已发数量之后继续编号
        """
        capabilities = await self.get_capabilities()
        now = datetime.now()

        async with self.session_factory() as session:
            order = await session.scalar(
                select(Order).where(Order.order_id == order_id).with_for_update()
            )
            if order is None:
                raise OrderNotFoundError(order_id)

            issued = order.delivered_keys
            remaining = order.units - len(issued)
            if order.status != OrderStatus.PAID.value or remaining <= 0:
                return FulfillmentResult(
                    success=True, status=ALREADY_PROCESSED,
                    order_status=order.status, delivered=len(issued),
                )

            kind = await self._fulfillment_type(session, order.product_id)
            if kind == FulfillmentType.PAYMENT:
                return FulfillmentResult(success=True, status=ALREADY_PROCESSED, order_status=order.status)

            if kind == FulfillmentType.TOKEN:
                if capabilities.supports_skip_locked:
                    # 支持行锁的数据库上保持订单锁直到 Token 写入
                    return await self._deliver_tokens(order, locked=session)
                await session.commit()
                return await self._deliver_tokens(order)

            keys = await claim_cards(session, order_id, order.product_id, remaining, capabilities, now)
            if not keys:
                return FulfillmentResult(
                    success=True, status=PROCESSED,
                    order_status=order.status, delivered=len(issued),
                )

            status = await self._store_delivery(session, order, order.card_key, issued + keys, now)
            if status is None:
                # 回滚本次领取，卡密回到池中
                await session.rollback()
                logger.warning(f"[Fulfill] Order {order_id} 补发时订单已被并发修改，放弃本次领取")
                return FulfillmentResult(success=True, status=ALREADY_PROCESSED)
            await session.commit()

        logger.info(f"[Fulfill] Order {order_id} 补发 {len(keys)} 张卡密，当前状态 {status}")
        return FulfillmentResult(
            success=True, status=PROCESSED, order_status=status, delivered=len(issued) + len(keys),
        )

    async def retry_undelivered_orders(self, limit: Optional[int] = None) -> int:
        """
        批量补发已支付未发齐的卡密 / Token 订单

        单个订单出错只记录日志，不影响其他订单；返回有进展的订单数
        """
        limit = limit or get_settings().delivery_retry_batch_size
        async with self.session_factory() as session:
            stmt = (
                select(Order)
                .outerjoin(Product, Product.id == Order.product_id)
                .where(
                    Order.status == OrderStatus.PAID.value,
                    or_(
                        Product.fulfillment_type.is_(None),
                        Product.fulfillment_type != FulfillmentType.PAYMENT.value,
                    ),
                )
                .order_by(Order.paid_at)
                .limit(limit)
            )
            orders = (await session.scalars(stmt)).all()
            candidates = [
                (o.order_id, len(o.delivered_keys)) for o in orders
                if len(o.delivered_keys) < o.units
            ]

        progressed = 0
        for order_id, before in candidates:
            try:
                result = await self.retry_undelivered(order_id)
            except Exception:
                logger.exception(f"补发订单 {order_id} 时发生错误")
                continue
            if result.status == PROCESSED and result.delivered > before:
                progressed += 1

        if progressed:
            logger.info(f"补发完成，{progressed}/{len(candidates)} 个订单有进展")
        return progressed


# 创建服务单例
fulfillment_service = FulfillmentService()


async def process_order_fulfillment(
    order_id: str,
    paid_amount: Union[float, str, Decimal],
    trade_no: str,
) -> FulfillmentResult:
    """支付确认入口（使用默认服务单例）"""
    return await fulfillment_service.process_order_fulfillment(order_id, paid_amount, trade_no)
