"""
Booking Pricing Engine 主应用入口
房价解析、附加费用与团体预订一致性维护
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from app.config import settings
from app.database import init_db
from app.routers import prices, booking_groups, bookings
from app.services.exceptions import InvariantViolation

logging.basicConfig(level=settings.LOG_LEVEL, format=settings.LOG_FORMAT)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时初始化数据库
    init_db()
    logger.info(f"{settings.APP_NAME} started (currency {settings.DEFAULT_CURRENCY})")

    yield


# 创建应用
app = FastAPI(
    title=settings.APP_NAME,
    description="房价解析与团体预订一致性维护",
    version="1.0.0",
    lifespan=lifespan
)

# CORS 配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(InvariantViolation)
async def invariant_violation_handler(request: Request, exc: InvariantViolation):
    """不变量被破坏：细节只写日志，对外返回通用错误"""
    logger.error(f"Invariant violated on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": InvariantViolation.PUBLIC_MESSAGE},
    )


# 注册路由
app.include_router(prices.router)
app.include_router(booking_groups.router)
app.include_router(bookings.router)


@app.get("/")
def root():
    """根路径"""
    return {
        "name": settings.APP_NAME,
        "version": "1.0.0",
    }


@app.get("/health")
def health_check():
    """健康检查"""
    return {"status": "healthy"}
