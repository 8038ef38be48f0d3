from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application settings
    app_name: str = "Transfer Coordinator"
    app_version: str = "1.0.0"
    debug: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Business logic settings
    max_transfer_amount: int = 100_000_000  # minor units

    # Recovery sweep
    recovery_timeout_minutes: float = 5.0
    recovery_interval_seconds: float = 60.0
    run_recovery_loop: bool = False

    # Deadline applied to every individual store call
    store_call_timeout_seconds: float = 5.0

    # Timezone used for record timestamps
    timezone: str = "UTC"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Environment-specific configurations
class DevelopmentSettings(Settings):
    debug: bool = True
    log_level: str = "DEBUG"
    log_format: str = "text"
    recovery_interval_seconds: float = 10.0


class ProductionSettings(Settings):
    debug: bool = False
    log_level: str = "INFO"
    run_recovery_loop: bool = True


class TestingSettings(Settings):
    debug: bool = True
    log_level: str = "WARNING"  # Reduce noise in tests
    store_call_timeout_seconds: float = 1.0


def get_settings_for_environment(env: str = "development") -> Settings:
    """Get settings for specific environment."""
    settings_map = {
        "development": DevelopmentSettings,
        "production": ProductionSettings,
        "testing": TestingSettings,
    }

    settings_class = settings_map.get(env.lower(), Settings)
    return settings_class()
