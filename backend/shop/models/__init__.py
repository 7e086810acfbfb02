"""
数据模型
"""
from shop.models.product import Product, FulfillmentType
from shop.models.order import Order, OrderStatus
from shop.models.card import Card

__all__ = ["Product", "FulfillmentType", "Order", "OrderStatus", "Card"]
