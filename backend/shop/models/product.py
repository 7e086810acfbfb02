"""
商品数据模型
只保留发货需要的字段
"""
from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func
from shop.core.database import Base
import enum


class FulfillmentType(str, enum.Enum):
    """商品发货类型"""
    CARD = "card"          # 静态卡密（默认）
    TOKEN = "token"        # 调用外部服务动态生成 Token
    PAYMENT = "payment"    # 纯支付，无需发货


class Product(Base):
    """商品表"""
    __tablename__ = "products"

    id = Column(String(64), primary_key=True)

    name = Column(String(255), nullable=False, default="")

    # 发货类型，见 FulfillmentType
    fulfillment_type = Column(String(16), nullable=False, default=FulfillmentType.CARD.value)

    created_at = Column(DateTime, server_default=func.now())

    def __repr__(self):
        return f"<Product(id={self.id}, fulfillment_type={self.fulfillment_type})>"
