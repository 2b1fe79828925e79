from __future__ import annotations

import logging
from typing import Any

import uvicorn
from fastapi import FastAPI

from tenantstore.core.config import get_settings
from tenantstore.core.logging import configure_logging
from tenantstore.services.freeze import deny_admission_review


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(
        title="tenantstore freeze webhook",
        version="1.0.0",
        description="Rejects every write to a tenant cluster while its DataStore is being migrated.",
    )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post(settings.freeze_webhook_path)
    async def migrate(review: dict[str, Any]) -> dict[str, Any]:
        # Every admission request is denied while the freeze policy is installed.
        request = review.get("request") or {}
        logger.info(
            "freeze_request_denied uid=%s operation=%s resource=%s namespace=%s",
            request.get("uid", ""),
            request.get("operation", ""),
            (request.get("resource") or {}).get("resource", ""),
            request.get("namespace", ""),
        )
        return deny_admission_review(review)

    return app


def run() -> None:
    settings = get_settings()
    ssl_options: dict[str, Any] = {}
    if settings.webhook_tls_cert_path and settings.webhook_tls_key_path:
        ssl_options = {
            "ssl_certfile": settings.webhook_tls_cert_path,
            "ssl_keyfile": settings.webhook_tls_key_path,
        }
    uvicorn.run(create_app(), host=settings.webhook_host, port=settings.webhook_port, **ssl_options)


if __name__ == "__main__":
    run()
