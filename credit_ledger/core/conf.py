from functools import lru_cache
from typing import Any, Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from credit_ledger.core.path_conf import BASE_PATH


class Settings(BaseSettings):
    """全局配置"""

    model_config = SettingsConfigDict(
        env_file=f'{BASE_PATH}/.env',
        env_file_encoding='utf-8',
        extra='ignore',
        case_sensitive=True,
    )

    # .env 当前环境
    ENVIRONMENT: Literal['dev', 'prod'] = 'dev'

    # FastAPI
    FASTAPI_API_V1_PATH: str = '/api/v1'
    FASTAPI_TITLE: str = 'CreditLedger'
    FASTAPI_DESCRIPTION: str = 'Credit ledger and billing reconciliation service'
    FASTAPI_DOCS_URL: str = '/docs'
    FASTAPI_REDOC_URL: str = '/redoc'
    FASTAPI_OPENAPI_URL: str | None = '/openapi'

    # .env 数据库
    DATABASE_URL: str = 'sqlite+aiosqlite:///./credit_ledger.db'

    # 数据库
    DATABASE_ECHO: bool | Literal['debug'] = False
    DATABASE_POOL_SIZE: int = 10
    DATABASE_MAX_OVERFLOW: int = 20

    # .env Redis (next-expiry hint cache only, optional)
    REDIS_URL: str | None = None

    # Redis
    REDIS_TIMEOUT: int = 5
    REDIS_KEY_PREFIX: str = 'credit_ledger'

    # .env Auth (tokens are issued by the external auth service)
    AUTH_JWT_SECRET: str | None = None
    AUTH_JWT_ALGORITHM: str = 'HS256'
    AUTH_JWT_AUDIENCE: str | None = 'authenticated'
    # Set to False only for local development without the auth service secret (ignored in prod)
    AUTH_JWT_VERIFY: bool = True

    # .env Admin
    ADMIN_API_TOKEN: str | None = None

    # .env Dodo Payments
    DODO_PAYMENTS_API_KEY: str | None = None
    DODO_PAYMENTS_ENVIRONMENT: Literal['test_mode', 'live_mode'] = 'test_mode'
    DODO_WEBHOOK_SECRET: str | None = None
    DODO_WEBHOOK_VERIFY: bool = True
    DODO_RETURN_URL: str | None = None

    # Dodo Payments product ids, keyed by "{plan}_{billing_period}"
    DODO_PRODUCT_IDS: dict[str, str] = {}

    # Dodo Payments one-time product ids, keyed by credit package name
    DODO_CREDIT_PRODUCT_IDS: dict[str, str] = {}

    # Provider retry policy
    PROVIDER_RETRY_ATTEMPTS: int = 3
    PROVIDER_RETRY_MIN_WAIT: float = 0.5
    PROVIDER_RETRY_MAX_WAIT: float = 8.0

    # Pending checkout correlation
    PENDING_CHECKOUT_TTL_SECONDS: int = 15 * 60  # 15 分钟
    CORRELATION_BASE_SCORE: float = 1.0
    CORRELATION_PLAN_MATCH_WEIGHT: float = 10.0
    CORRELATION_PERIOD_MATCH_WEIGHT: float = 10.0
    CORRELATION_RECENCY_WEIGHT: float = 5.0

    # Webhooks
    WEBHOOK_PROCESSING_TIMEOUT_SECONDS: int = 300  # 5 分钟

    # Credits
    ADMIN_GRANT_MAX_CREDITS: int = 100_000
    EXPIRY_CACHE_TTL_SECONDS: int = 60 * 60 * 24  # 1 天
    SWEEP_BATCH_SIZE: int = 500

    # Log
    LOG_LEVEL: str = 'INFO'
    LOG_FORMAT: str = '%(asctime)s | %(levelname)-8s | %(name)s - %(message)s'
    LOG_RICH: bool = True

    @model_validator(mode='before')
    @classmethod
    def check_env(cls, values: Any) -> Any:
        """检查环境变量"""
        if values.get('ENVIRONMENT') == 'prod':
            # FastAPI
            values['FASTAPI_OPENAPI_URL'] = None

            # Log
            values.setdefault('LOG_RICH', False)

            # Webhooks are always verified in production
            values['DODO_WEBHOOK_VERIFY'] = True

        return values

    def product_id_for(self, plan: str, billing_period: str) -> str | None:
        """Dodo product id configured for a plan/billing period pair."""
        return self.DODO_PRODUCT_IDS.get(f'{plan}_{billing_period}')

    def plan_for_product(self, product_id: str) -> tuple[str, str] | None:
        """Reverse lookup of (plan, billing_period) for a Dodo product id."""
        for key, value in self.DODO_PRODUCT_IDS.items():
            if value == product_id:
                plan, _, billing_period = key.rpartition('_')
                return plan, billing_period
        return None


@lru_cache
def get_settings() -> Settings:
    """获取全局配置单例"""
    return Settings()


# 创建全局配置实例
settings = get_settings()
