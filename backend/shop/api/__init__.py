"""
API 路由注册
"""
from fastapi import APIRouter
from shop.api.fulfillment import router as fulfillment_router

api_router = APIRouter(prefix="/api")

# 注册子路由
api_router.include_router(fulfillment_router)
