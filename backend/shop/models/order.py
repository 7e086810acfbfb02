"""
订单数据模型
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, Numeric
from sqlalchemy.sql import func
from shop.core.database import Base
import enum


class OrderStatus(str, enum.Enum):
    """订单状态枚举"""
    PENDING = "pending"        # 待支付
    CANCELLED = "cancelled"    # 已取消（仍可能收到迟到的支付回调）
    PAID = "paid"              # 已支付，未发货或部分发货
    DELIVERED = "delivered"    # 已发货


# 可以进入发货流程的状态
OPEN_STATUSES = (OrderStatus.PENDING.value, OrderStatus.CANCELLED.value)


class Order(Base):
    """订单表"""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # 业务订单号，唯一索引
    order_id = Column(String(64), unique=True, index=True, nullable=False)

    product_id = Column(String(64), index=True, nullable=False)

    # 下单用户的外部 ID（Token 发货时使用）
    user_id = Column(String(64), nullable=True)

    quantity = Column(Integer, nullable=False, default=1)

    amount = Column(Numeric(10, 2), nullable=False)

    status = Column(String(16), nullable=False, default=OrderStatus.PENDING.value, index=True)

    # 已发出的卡密 / Token，换行分隔
    card_key = Column(Text, nullable=True)

    trade_no = Column(String(128), nullable=True)

    paid_at = Column(DateTime, nullable=True)

    delivered_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())

    @property
    def units(self) -> int:
        """应发数量，未填或为 0 时按 1 份处理"""
        return self.quantity or 1

    @property
    def delivered_keys(self) -> list[str]:
        """已发出的卡密列表"""
        if not self.card_key:
            return []
        return [key for key in self.card_key.split("\n") if key]

    def __repr__(self):
        return f"<Order(order_id={self.order_id}, status={self.status})>"
