from contextlib import asynccontextmanager
from typing import Any, cast

from fastapi import FastAPI

from erpgate.api import deps, health, tenants
from erpgate.core.circuit_breaker import set_notification_callback
from erpgate.core.config import settings
from erpgate.core.errors import capture_message, init_sentry
from erpgate.core.logging_config import get_logger
from erpgate.core.scheduler import start_scheduler, stop_scheduler
from erpgate.db import create_db_and_tables
from erpgate.middleware.context import RequestContextMiddleware

logger = get_logger(__name__)


def _on_breaker_state_change(name: str, old_state: str, new_state: str) -> None:
    level = "warning" if new_state == "open" else "info"
    capture_message(
        f"Circuit breaker {name} is now {new_state}",
        level=level,
        context={"circuit": name, "previous_state": old_state, "new_state": new_state},
        tags={"circuit": name},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("erpgate API starting", environment=settings.ENVIRONMENT, odoo_url=settings.ODOO_URL)
    init_sentry(settings.SENTRY_DSN, environment=settings.ENVIRONMENT)
    set_notification_callback(_on_breaker_state_change)
    create_db_and_tables()

    if settings.RUN_SCHEDULER:
        start_scheduler(deps.get_idempotency_store(), deps.get_client_manager())
    else:
        logger.info("RUN_SCHEDULER is false, skipping scheduler startup in this process")

    try:
        yield
    finally:
        stop_scheduler()
        set_notification_callback(None)
        await deps.close_services()


app = FastAPI(title=settings.PROJECT_NAME, openapi_url=f"{settings.API_V1_STR}/openapi.json", lifespan=lifespan)

app.add_middleware(cast(Any, RequestContextMiddleware))

app.include_router(tenants.router, prefix=f"{settings.API_V1_STR}/tenants", tags=["tenants"])
app.include_router(health.router, prefix="/health", tags=["health"])


@app.get("/")
def root():
    return {"message": "erpgate API"}
