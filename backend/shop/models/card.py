"""
卡密数据模型
预生成的卡密池，每张卡最多被一个订单消耗
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, Index
from sqlalchemy.sql import func
from shop.core.database import Base


class Card(Base):
    """卡密表"""
    __tablename__ = "cards"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    product_id = Column(String(64), nullable=False)

    card_key = Column(Text, nullable=False)

    is_used = Column(Boolean, nullable=False, default=False)

    used_at = Column(DateTime, nullable=True)

    # 预占（软锁），超过有效期后视为失效
    reserved_order_id = Column(String(64), nullable=True, index=True)
    reserved_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())

    __table_args__ = (
        Index("idx_cards_product_used", "product_id", "is_used"),
    )

    def __repr__(self):
        return f"<Card(id={self.id}, product_id={self.product_id}, is_used={self.is_used})>"
