"""
MallFlow Configuration Management
遵循约束：环境变量前缀 MF__
"""
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_PLUGIN_DIR = str(Path(__file__).resolve().parent.parent / "plugins")


class Settings(BaseSettings):
    """全局配置类"""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="MF__",
        case_sensitive=False
    )

    # Database
    db_host: str = Field(default="localhost")
    db_port: int = Field(default=5432)
    db_name: str = Field(default="mallflow")
    db_user: str = Field(default="mallflow")
    db_password: str = Field(default="")
    db_pool_size: int = Field(default=20)
    db_max_overflow: int = Field(default=40)
    db_url: Optional[str] = Field(default=None)  # 覆盖 postgres 连接串，例如 sqlite+aiosqlite:///...
    db_lock_timeout: float = Field(default=30.0)  # sqlite busy timeout（秒）
    db_echo: bool = Field(default=False)

    # Redis
    redis_host: str = Field(default="localhost")
    redis_port: int = Field(default=6379)
    redis_db: int = Field(default=0)
    redis_password: Optional[str] = Field(default=None)

    # Event bus
    event_bus_backend: str = Field(default="redis")  # redis | memory
    event_max_deliveries: int = Field(default=3)
    event_claim_idle_ms: int = Field(default=60000)

    # Jobs
    job_max_attempts: int = Field(default=3)
    job_backoff_base_seconds: float = Field(default=1.0)
    job_backoff_max_seconds: float = Field(default=30.0)
    job_backoff_jitter_seconds: float = Field(default=1.0)
    job_concurrency: int = Field(default=4)
    tx_max_attempts: int = Field(default=3)
    scheduler_enabled: bool = Field(default=True)

    # Monitoring
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")  # json or text

    # Plugin Settings
    plugin_dir: str = Field(default=_DEFAULT_PLUGIN_DIR)
    plugin_auto_load: bool = Field(default=True)
    plugin_config_file: str = Field(default="plugin.json")

    # 订单与营销策略
    order_auto_close_minutes: int = Field(default=15)
    inventory_default_threshold: int = Field(default=5)
    activation_lookahead_minutes: int = Field(default=30)
    group_buy_time_limit_hours: int = Field(default=24)
    group_buy_required_count: int = Field(default=2)
    group_buy_max_required_count: int = Field(default=10)
    coupon_default_valid_days: int = Field(default=30)

    @field_validator("event_bus_backend")
    @classmethod
    def validate_event_bus_backend(cls, v: str) -> str:
        """只支持 redis / memory 两种后端"""
        if v not in ("redis", "memory"):
            raise ValueError("event_bus_backend must be 'redis' or 'memory'")
        return v

    @field_validator("job_max_attempts", "tx_max_attempts", "event_max_deliveries", "job_concurrency")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """重试次数与并发数必须为正"""
        if v < 1:
            raise ValueError("value must be >= 1")
        return v

    @property
    def database_url(self) -> str:
        """构建数据库连接字符串"""
        if self.db_url:
            return self.db_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def sync_database_url(self) -> str:
        """构建同步数据库连接字符串（用于 Alembic）"""
        if self.db_url:
            return self.db_url.replace("+asyncpg", "").replace("+aiosqlite", "")
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def redis_url(self) -> str:
        """构建 Redis 连接字符串"""
        password = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{password}{self.redis_host}:{self.redis_port}/{self.redis_db}"


@lru_cache()
def get_settings() -> Settings:
    """获取配置单例"""
    return Settings()
