"""
发货流程异常定义
"""
from decimal import Decimal


class FulfillmentError(Exception):
    """发货相关异常基类"""
    pass


class OrderNotFoundError(FulfillmentError):
    """订单不存在"""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class AmountMismatchError(FulfillmentError):
    """实付金额与订单金额不符（疑似篡改）"""

    def __init__(self, order_id: str, expected: Decimal, paid: Decimal):
        self.order_id = order_id
        self.expected = expected
        self.paid = paid
        super().__init__(f"Amount mismatch! Order {order_id}: {expected}, Paid: {paid}")


class InvalidQuantityError(FulfillmentError):
    """订单数量非法（负数）"""

    def __init__(self, order_id: str, quantity: int):
        self.order_id = order_id
        self.quantity = quantity
        super().__init__(f"Order {order_id} has invalid quantity {quantity}")


class ReservationUnsupportedError(FulfillmentError):
    """当前库结构不支持卡密预占"""
    pass


class TokenIssuerError(FulfillmentError):
    """Token 发放服务登录或配置错误"""
    pass
