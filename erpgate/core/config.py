from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "erpgate"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"

    # Local persistence for provisioning, idempotency and audit records
    DATABASE_URL: str = "sqlite:///./erpgate.db"

    # Odoo server hosting the per-tenant databases
    ODOO_URL: str = "http://localhost:8069"
    ODOO_MASTER_PASSWORD: str = ""  # Must be set via environment variable
    ODOO_REQUEST_TIMEOUT: float = 30.0  # seconds

    # Fernet key used for admin passwords at rest
    ENCRYPTION_KEY: str = ""

    # Retry policy for resilient RPC calls
    RPC_MAX_RETRIES: int = 3
    RPC_INITIAL_DELAY: float = 1.0  # seconds
    RPC_MAX_DELAY: float = 10.0  # seconds
    RPC_BACKOFF_MULTIPLIER: float = 2.0

    # Circuit breaker (one per client instance, process-local)
    BREAKER_FAILURE_THRESHOLD: int = 5
    BREAKER_SUCCESS_THRESHOLD: int = 2
    BREAKER_TIMEOUT: float = 60.0  # seconds in OPEN before probing
    BREAKER_MONITORING_PERIOD: float = 120.0  # failure window in seconds

    IDEMPOTENCY_TTL_HOURS: int = 24

    # Provisioning workflow
    PROVISION_SETTLE_DELAY: float = 10.0
    PROVISION_AUTH_RETRIES: int = 10
    PROVISION_AUTH_DELAY: float = 3.0
    PROVISION_CUSTOMIZE_RETRIES: int = 5
    PROVISION_CUSTOMIZE_DELAY: float = 2.0
    PROVISION_MAX_DELAY: float = 60.0
    PROVISION_COUNTRY_CODE: str = "SA"

    CLIENT_CACHE_TTL_MINUTES: int = 60

    RUN_SCHEDULER: bool = False
    SENTRY_DSN: str = ""

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")


settings = Settings()
