"""
File: app/core/response.py
Description: 统一响应信封（Unified Response Envelope）模型与辅助函数

本模块定义了全站统一的 API 响应格式。
所有 JSON 接口必须遵循此契约返回数据。

- success: code = "success"
- fail:    code = "<domain>.<reason>" (由异常处理器构造)
- partial: 请求已处理但结果不完整 (如批量绑定部分失败)，HTTP 200 + 领域业务码

Author: jinmozhe
Created: 2025-11-24
Updated: 2026-03-02 (Add partial envelope)
"""

from datetime import UTC, datetime
from typing import Any, Generic, TypeVar, cast

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")

SUCCESS_CODE = "success"


class ResponseBase(BaseModel):
    """
    响应基类
    """

    model_config = ConfigDict(from_attributes=True)

    code: str = Field(default=SUCCESS_CODE, description="业务状态码")
    message: str = Field(default="Success", description="响应消息")
    request_id: str | None = Field(default=None, description="请求追踪ID")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="响应生成时间",
    )


class ResponseModel(ResponseBase, Generic[T]):
    """
    统一响应信封
    """

    data: T | None = Field(default=None, description="业务数据")

    @staticmethod
    def _to_json_safe(data: Any) -> Any:
        """将 Pydantic 模型转换为 JSON 安全的字典"""
        if hasattr(data, "model_dump"):
            return cast(Any, data).model_dump(mode="json")
        return data

    @classmethod
    def success(
        cls,
        data: T | None = None,
        message: str = "Success",
        request_id: str | None = None,
    ) -> "ResponseModel[T]":
        """
        构造成功响应
        """
        return cls(
            code=SUCCESS_CODE,
            message=message,
            data=cls._to_json_safe(data),
            request_id=request_id,
        )

    @classmethod
    def partial(
        cls,
        code: str,
        message: str,
        data: T | None = None,
        request_id: str | None = None,
    ) -> "ResponseModel[T]":
        """
        构造部分成功响应 (HTTP 200，但 code 非 success)
        前端据 code 区分"全部成功"与"部分失败"。
        """
        return cls(
            code=code,
            message=message,
            data=cls._to_json_safe(data),
            request_id=request_id,
        )

    @classmethod
    def fail(
        cls,
        code: str,
        message: str,
        data: Any = None,
        request_id: str | None = None,
    ) -> "ResponseModel[Any]":
        """
        构造失败响应
        """
        return cls(
            code=code,
            message=message,
            data=cls._to_json_safe(data),
            request_id=request_id,
        )
