import logging
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_ENV_LOG_LEVELS = {
    "development": logging.DEBUG,
    "production": logging.INFO,
    "test": logging.WARNING,
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=5000, alias="PORT")
    cors_origin: str = Field(default="http://localhost:3000", alias="CORS_ORIGIN")
    environment: str = Field(default="development", alias="APP_ENV")
    log_level: str | None = Field(default=None, alias="LOG_LEVEL")

    database_url: str = Field(default="sqlite:///./todos.db", alias="DATABASE_URL")

    @property
    def logging_level(self) -> int:
        # An explicit LOG_LEVEL wins; otherwise verbosity follows the environment.
        if self.log_level:
            level = logging.getLevelName(self.log_level.upper())
            if isinstance(level, int):
                return level
        return _ENV_LOG_LEVELS.get(self.environment.lower(), logging.INFO)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
