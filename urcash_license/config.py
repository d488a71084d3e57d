from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="URCASH_LICENSE_", env_file=".env", extra="ignore")

    # License Server Configuration
    LICENSE_API_URL: str = "http://localhost:39000/api"
    LICENSE_API_TIMEOUT: float = 10.0

    # Remote endpoints
    STATUS_CHECK_PATH: str = "/license/check-local"
    STANDARD_ACTIVATE_PATH: str = "/license/activate"
    FIRST_ACTIVATE_PATH: str = "/license/first-activation"
    REDEEM_CODE_PATH: str = "/license/activation"
    VERIFY_PATH: str = "/license/status"
    SERVER_CACHE_CLEAR_PATH: str = "/license/cache/clear"

    # Installation Info
    APP_NAME: str = "URCash"
    APP_VERSION: str = "1.0.0"

    # Database
    DATABASE_URL: str = "sqlite:///./urcash_license.db"

    # Cache
    CACHE_TTL_SECONDS: int = 30 * 60
    OFFLINE_GRACE_PERIOD_HOURS: int = 72

    # Activation
    ACTIVATION_GRACE_SECONDS: float = 1.0
    GEOLOCATION_TIMEOUT_SECONDS: float = 5.0
    GEOLOCATION_URL: str = ""  # Empty disables IP-based location hints

    # Polling
    POLL_INTERVAL_MINUTES: int = 30

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

settings = Settings()
