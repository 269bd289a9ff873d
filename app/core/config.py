"""
File: app/core/config.py
Description: 全局应用配置管理（使用 pydantic-settings）

所有配置值通过 .env 文件加载。
本模块负责：
1. 校验环境变量类型
2. 解析复杂类型（如 CORS 列表、启用的社交平台列表）
3. 组装数据库 DSN（确保使用 postgresql+asyncpg 协议）
4. 定义 Redis 连接、JWT 安全参数与上游后端 (Backend API) 访问参数
5. 定义社交账号授权绑定流程的时效参数 (nonce / 弹窗 / 结果暂存)
6. 运行时强制校验必填项，确保应用在配置缺失时快速失败

Author: jinmozhe
Created: 2025-11-24
Updated: 2026-03-02 (Social Link Orchestrator)
"""

from typing import Literal

from pydantic import AnyHttpUrl, model_validator
from pydantic_core import MultiHostUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """全局配置对象（唯一真实来源）"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
        case_sensitive=True,
    )

    # --------------------------------------------------------------------------
    # 1. General (通用)
    # --------------------------------------------------------------------------
    PROJECT_NAME: str = "Social Link Orchestrator"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: Literal["local", "dev", "prod"] = "local"
    DEBUG: bool = False

    # 密钥 (生产环境强制要求高强度随机串)
    # 用于校验前端携带的 JWT
    SECRET_KEY: str | None = None

    # CORS 配置（Pydantic 会自动解析 JSON 字符串列表）
    BACKEND_CORS_ORIGINS: list[AnyHttpUrl] = []

    # --------------------------------------------------------------------------
    # 2. Database (PostgreSQL)
    # --------------------------------------------------------------------------
    POSTGRES_SERVER: str | None = None
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str | None = None
    POSTGRES_PASSWORD: str | None = None
    POSTGRES_DB: str | None = None

    # 连接池配置 (Pool Settings)
    DB_POOL_SIZE: int = 20  # 连接池基准大小
    DB_MAX_OVERFLOW: int = 10  # 允许超出基准的额外连接数
    DB_POOL_PRE_PING: bool = True  # 每次获取连接前是否自动 ping
    DB_POOL_TIMEOUT: int = 30  # 连接获取超时（秒）
    DB_POOL_RECYCLE: int = 1800  # 连接回收时间（秒），防止连接过期

    # 完整 DSN 覆盖（可选）
    SQLALCHEMY_DATABASE_URI: str | None = None

    # --------------------------------------------------------------------------
    # 3. Logging (Loguru)
    # --------------------------------------------------------------------------
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    LOG_JSON_FORMAT: bool = False  # 是否输出 JSON 格式
    LOG_FILE_ENABLED: bool = False  # 是否启用文件日志
    LOG_DIR: str = "logs"  # 日志文件目录
    LOG_ROTATION: str = "1 hour"  # 轮转策略
    LOG_RETENTION: str = "7 days"  # 保留时间
    LOG_COMPRESSION: str = "zip"  # 压缩格式
    LOG_DIAGNOSE: bool = True  # 是否启用诊断信息（生产环境建议 False）

    # --------------------------------------------------------------------------
    # 4. Redis Settings (nonce / 尝试记录 / 结果暂存 / 目标快照)
    # --------------------------------------------------------------------------
    # 默认连接本地，生产环境请在 .env 中覆盖
    REDIS_URL: str = "redis://localhost:6379/0"

    # --------------------------------------------------------------------------
    # 5. Security & Authentication (JWT)
    # --------------------------------------------------------------------------
    # JWT 签名算法 (与身份层保持一致)
    ALGORITHM: str = "HS256"

    # 测试/本地签发 Access Token 的有效期 (分钟)
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # --------------------------------------------------------------------------
    # 6. Upstream Backend API (上游 REST 后端)
    # --------------------------------------------------------------------------
    BACKEND_API_BASE_URL: str = "http://localhost:8080/api"
    BACKEND_TIMEOUT_SECONDS: float = 15.0

    # 授权码交换时使用的服务凭证
    # 浏览器跳转回调时不携带 Authorization 头，因此由服务端代为认证
    BACKEND_SERVICE_TOKEN: str | None = None

    # --------------------------------------------------------------------------
    # 7. Social Auth (社交账号授权绑定)
    # --------------------------------------------------------------------------
    # 前端站点来源: postMessage 唯一目标 origin，同时作为 redirect 模式回跳基址
    FRONTEND_ORIGIN: str = "http://localhost:3000"

    # 启用的平台
    SOCIAL_AUTH_PROVIDERS: list[str] = ["facebook", "instagram", "tiktok", "twitter"]

    # nonce 有效期 (秒)，超时后即使首次使用也拒绝
    SOCIAL_AUTH_NONCE_TTL_SECONDS: int = 600

    # 弹窗模式下 opener 等待回调的最长时间 (秒)，超时视为用户取消
    SOCIAL_AUTH_POPUP_TIMEOUT_SECONDS: int = 300

    # redirect 模式结果暂存有效期 (秒)
    SOCIAL_AUTH_RESULT_TTL_SECONDS: int = 300

    # 可绑定目标 (Pages/Channels) 快照有效期 (秒)
    SOCIAL_AUTH_TARGETS_TTL_SECONDS: int = 900

    # redirect 模式未指定 return_path 时的默认落地页
    SOCIAL_AUTH_DEFAULT_RETURN_PATH: str = "/social-accounts"

    # Facebook OAuth Dialog 版本号 (用于修正后端返回的裸域授权链接)
    FACEBOOK_GRAPH_VERSION: str = "v20.0"

    # --------------------------------------------------------------------------
    # Properties (便捷属性)
    # --------------------------------------------------------------------------
    @property
    def is_production(self) -> bool:
        """是否为生产环境"""
        return self.ENVIRONMENT == "prod"

    @property
    def is_debug(self) -> bool:
        """是否启用调试模式（仅在非生产环境有效）"""
        return self.DEBUG and not self.is_production

    @property
    def frontend_origin(self) -> str:
        """规范化后的前端 origin (去除末尾斜杠)"""
        return self.FRONTEND_ORIGIN.rstrip("/")

    # --------------------------------------------------------------------------
    # Validators
    # --------------------------------------------------------------------------
    @model_validator(mode="after")
    def _validate_and_build_db_uri(self) -> "Settings":
        """验证必填项并构建数据库连接串。"""
        # 1. 校验 SECRET_KEY
        if not self.SECRET_KEY:
            raise ValueError("SECRET_KEY 必须在 .env 中设置")

        # 生产环境强制校验密钥强度
        if self.ENVIRONMENT == "prod" and len(self.SECRET_KEY) < 32:
            raise ValueError("生产环境 SECRET_KEY 长度必须 >= 32 字符")

        # 2. 生产环境必须配置服务凭证，否则回调交换无法通过上游鉴权
        if self.ENVIRONMENT == "prod" and not self.BACKEND_SERVICE_TOKEN:
            raise ValueError("生产环境必须设置 BACKEND_SERVICE_TOKEN")

        # 3. 如果 env 直接提供了 DSN，则优先使用
        if self.SQLALCHEMY_DATABASE_URI:
            return self

        # 4. 否则检查 POSTGRES_* 字段是否齐全
        missing_fields: list[str] = []
        required_pg_fields = [
            "POSTGRES_SERVER",
            "POSTGRES_USER",
            "POSTGRES_PASSWORD",
            "POSTGRES_DB",
        ]

        for field in required_pg_fields:
            if not getattr(self, field):
                missing_fields.append(field)

        if missing_fields:
            raise ValueError(
                f"缺少数据库环境变量，无法构建 DSN: {', '.join(missing_fields)}"
            )

        # 5. 自动组装 DSN
        self.SQLALCHEMY_DATABASE_URI = str(
            MultiHostUrl.build(
                scheme="postgresql+asyncpg",
                username=self.POSTGRES_USER,  # type: ignore[arg-type]
                password=self.POSTGRES_PASSWORD,  # type: ignore[arg-type]
                host=self.POSTGRES_SERVER,  # type: ignore[arg-type]
                port=self.POSTGRES_PORT,
                path=self.POSTGRES_DB,  # type: ignore[arg-type]
            )
        )

        return self


# 单例配置对象
# 配置加载失败时，Pydantic 会抛出 ValidationError，包含详细错误信息
settings = Settings()
