"""
File: app/api_router.py
Description: 根 API 路由聚合层

本模块负责：
1. 聚合所有业务领域的 Router
2. 统一设置路由前缀 (如 /social-auth)
3. 统一设置标签 (Tags) 用于 OpenAPI 文档分组

Author: jinmozhe
Created: 2025-12-05
Updated: 2026-03-02 (Social Auth Domain)
"""

from fastapi import APIRouter

# 导入领域路由
from app.domains.social_auth.router import router as social_auth_router

# 创建根 API 路由
api_router = APIRouter()

# ------------------------------------------------------------------------------
# 注册领域路由
# ------------------------------------------------------------------------------

# 1. 社交账号授权绑定 (Social Auth Domain)
# 包含：授权发起、回调对账、授权状态、账号与目标的绑定/解绑
api_router.include_router(
    social_auth_router, prefix="/social-auth", tags=["social-auth"]
)
