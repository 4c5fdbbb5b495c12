from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

class Settings(BaseSettings):
    """
    应用程序配置设置类，从环境变量或.env文件加载所有配置项。
    使用Pydantic进行数据验证和类型检查。

    包含服务器配置、数据库与Redis连接、市场模拟参数以及流程控制开关。
    所有配置项都带有默认值，本地开发无需额外配置即可启动。
    """
    # Server
    BACKEND_PORT: int = 8000

    # Model configuration tells Pydantic where to find the .env file.
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding='utf-8',
        extra='ignore',
        case_sensitive=True
    )

    PROJECT_NAME: str = "Experiment Execution Engine"
    API_V1_STR: str = "/api/v1"

    BACKEND_CORS_ORIGINS: List[str] = ["*"]

    DATABASE_URL: str = "sqlite:///./database.db"

    # Redis holds the ephemeral per-run state (round timers, stage countdowns)
    REDIS_URL: str = "redis://localhost:6379/0"
    RUN_STATE_TTL_SECONDS: int = 6 * 60 * 60

    # Market simulation
    PRICE_FLUCTUATION_MIN: float = 0.8
    PRICE_FLUCTUATION_MAX: float = 1.2

    # Flow control
    MAX_STAGE_VISITS: int = 10
    ENABLE_SEQUENTIAL_FALLBACK: bool = True

    LOG_LEVEL: str = "INFO"

# Create a single, globally accessible instance of the settings.
settings = Settings()
