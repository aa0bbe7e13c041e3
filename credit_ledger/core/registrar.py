from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from credit_ledger import __version__
from credit_ledger.common.log import setup_logging
from credit_ledger.core.conf import settings
from credit_ledger.src.billing.shared.exceptions import BillingError


@asynccontextmanager
async def register_init(app: FastAPI):
    """
    启动初始化

    :param app: FastAPI 应用实例
    """
    setup_logging()

    yield

    # 关闭连接
    from credit_ledger.database.db import async_engine
    from credit_ledger.database.redis import redis_client

    await async_engine.dispose()
    if redis_client is not None:
        await redis_client.aclose()


def register_app() -> FastAPI:
    """注册 FastAPI 应用"""
    app = FastAPI(
        title=settings.FASTAPI_TITLE,
        version=__version__,
        description=settings.FASTAPI_DESCRIPTION,
        docs_url=settings.FASTAPI_DOCS_URL,
        redoc_url=settings.FASTAPI_REDOC_URL,
        openapi_url=settings.FASTAPI_OPENAPI_URL,
        lifespan=register_init,
    )

    register_router(app)
    register_exception(app)

    return app


def register_router(app: FastAPI) -> None:
    """
    路由

    :param app: FastAPI 应用实例
    """
    from credit_ledger.src.billing.endpoints import billing_router

    app.include_router(billing_router, prefix=settings.FASTAPI_API_V1_PATH)

    @app.get('/health', include_in_schema=False)
    async def health() -> dict:
        return {'status': 'ok', 'version': __version__}


def register_exception(app: FastAPI) -> None:
    """
    全局异常处理

    :param app: FastAPI 应用实例
    """

    @app.exception_handler(BillingError)
    async def billing_exception_handler(request: Request, exc: BillingError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={'error': 'INVALID_REQUEST', 'message': str(exc), 'details': {}},
        )
