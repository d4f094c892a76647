from __future__ import annotations

import logging
import time

from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError

from src.api.routes import get_gateway_client, router
from src.config import settings
from src.models.db import init_db

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = FastAPI(
    title="push_fanout_service",
    description="Registers device tokens and fans push notifications out through FCM",
    version="0.1.0",
    debug=settings.app_debug,
)


@app.on_event("startup")
def startup_event() -> None:
    if settings.token_store != "sql":
        logging.info("Using in-memory token store; skipping database initialization")
        return

    max_attempts = 8
    delay_seconds = 3
    last_error: Exception | None = None

    for attempt in range(1, max_attempts + 1):
        try:
            init_db()
            logging.info("Database initialization completed", extra={"attempt": attempt, "schema": settings.db_schema})
            return
        except SQLAlchemyError as exc:
            last_error = exc
            logging.exception(
                "Database initialization failed",
                extra={"attempt": attempt, "max_attempts": max_attempts},
            )
            if attempt < max_attempts:
                time.sleep(delay_seconds)
            continue

    raise RuntimeError("Database initialization failed after retries") from last_error


@app.on_event("shutdown")
def shutdown_event() -> None:
    if get_gateway_client.cache_info().currsize:
        get_gateway_client().close()


app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("src.app:app", host=settings.app_host, port=settings.app_port)
