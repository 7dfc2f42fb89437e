"""
应用配置
从环境变量读取配置（支持 .env 文件）
"""
from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """应用设置"""

    # 应用基础配置
    APP_NAME: str = "Booking Pricing Engine"

    # 数据库配置
    DATABASE_URL: str = "sqlite:///./booking_pricing.db"

    # 日志配置
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

    # 计价配置
    DEFAULT_CURRENCY: str = "EUR"          # 房价与附加费用的计价币种
    ENFORCE_GUEST_CAPACITY: bool = True    # 写操作是否校验房型容量
    GROUP_MIN_ROOMS: int = 2               # 团体预订最少房间数

    model_config = ConfigDict(env_file=".env", case_sensitive=True)


# 全局设置实例
settings = Settings()
