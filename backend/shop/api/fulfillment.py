"""
发货相关 API
- 支付确认回调
- 下单时预占卡密
"""
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from decimal import Decimal
from shop.core.exceptions import (
    OrderNotFoundError,
    AmountMismatchError,
    InvalidQuantityError,
    ReservationUnsupportedError,
)
from shop.core.security import verify_webhook_secret
from shop.models import Order
from shop.models.order import OPEN_STATUSES
from shop.services.card_pool import reserve_cards
from shop.services.fulfillment import FulfillmentService, FulfillmentResult, fulfillment_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/fulfillment", tags=["发货"])


def get_fulfillment_service() -> FulfillmentService:
    """依赖注入：获取发货服务"""
    return fulfillment_service


class PaymentNotifyRequest(BaseModel):
    """支付确认请求体"""
    order_id: str
    paid_amount: Decimal
    trade_no: str


class ReserveResponse(BaseModel):
    """预占响应"""
    order_id: str
    requested: int
    reserved: int = Field(description="该订单当前持有的预占数量")


@router.post("/notify", response_model=FulfillmentResult)
async def payment_notify(
    request: PaymentNotifyRequest,
    _: bool = Depends(verify_webhook_secret),
    service: FulfillmentService = Depends(get_fulfillment_service),
):
    """
    支付确认回调
    金额不符视为异常请求，直接拒绝
    """
    try:
        return await service.process_order_fulfillment(
            request.order_id, request.paid_amount, request.trade_no
        )
    except OrderNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="订单不存在"
        )
    except AmountMismatchError as e:
        logger.warning(f"安全警告: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="支付金额与订单金额不符"
        )
    except InvalidQuantityError as e:
        logger.error(f"订单数据异常: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="订单数量不合法"
        )


@router.post("/orders/{order_id}/reserve", response_model=ReserveResponse)
async def reserve_order_cards(
    order_id: str,
    service: FulfillmentService = Depends(get_fulfillment_service),
):
    """
    为待支付订单预占卡密
    预占在有效期（默认 1 分钟）内不会被其他订单领取
    """
    capabilities = await service.get_capabilities()
    async with service.session_factory() as db:
        order = await db.scalar(select(Order).where(Order.order_id == order_id))
        if not order:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="订单不存在"
            )
        if order.status not in OPEN_STATUSES:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"订单状态为 {order.status}，无需预占"
            )

        try:
            reserved = await reserve_cards(db, order_id, order.product_id, order.units, capabilities)
        except ReservationUnsupportedError:
            raise HTTPException(
                status_code=status.HTTP_501_NOT_IMPLEMENTED,
                detail="当前部署不支持卡密预占"
            )
        await db.commit()

    return ReserveResponse(order_id=order_id, requested=order.units, reserved=reserved)
