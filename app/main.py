# app/main.py
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware
from sqlalchemy import text

from app.api.deps import domain_error_handler, http_error_handler, validation_error_handler
from app.core.db import engine
from app.core.logger import logger
from app.core.redis import make_arq_pool
from app.core.settings import settings
from app.domain.errors import DomainError
from app.middleware.error_handler import ErrorHandlerMiddleware
from app.middleware.request_id import RequestIdMiddleware

# Роутеры
from app.api.routers.admin import router as admin_router
from app.api.routers.batch import router as batch_router
from app.api.routers.grsai import router as grsai_router
from app.api.routers.payments import router as payments_router
from app.api.routers.stripe_webhook import router as stripe_router
from app.api.routers.video import router as video_router
from app.api.routers.wallet import router as wallet_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("📦 Lifespan start")

    # DB ping
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
        logger.info("✅ DB connected")

    # arq-пул для фоновых задач (webhook enterprise-клиентам)
    app.state.arq = None
    try:
        app.state.arq = await make_arq_pool()
        logger.info("✅ Redis connected")
    except Exception as e:
        logger.warning(f"⚠️ Redis unavailable, background jobs disabled: {e}")

    yield

    logger.info("🧹 Lifespan shutdown")
    try:
        if app.state.arq is not None:
            await app.state.arq.aclose()
    except Exception as e:
        logger.warning(f"⚠️ arq.aclose: {e}")
    await engine.dispose()


app = FastAPI(title="Video Credits Service", lifespan=lifespan)

# Middleware
app.add_middleware(RequestIdMiddleware)
app.add_middleware(ErrorHandlerMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.public_base()],
    allow_credentials=False,
    allow_methods=["POST", "GET"],
    allow_headers=["*"],
)

app.add_exception_handler(DomainError, domain_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, validation_error_handler)

app.include_router(wallet_router)                              # /wallet
app.include_router(payments_router, prefix="/payment")         # /payment/recharge, /payment/finalize
app.include_router(video_router, prefix="/video")              # /video/render-start, /video/result/{id}
app.include_router(batch_router, prefix="/enterprise")         # /enterprise/batches
app.include_router(admin_router, prefix="/admin")              # /admin/...
app.include_router(stripe_router, prefix="/webhook")           # /webhook/stripe
app.include_router(grsai_router, prefix="/webhook")            # /webhook/grsai
