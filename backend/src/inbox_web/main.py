from __future__ import annotations

import logging
from typing import Mapping

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import router
from .channels import ChannelAdapter, create_channel_adapters
from .config import Settings, get_settings, runtime_secret_issues
from .inbox import InboxService
from .inbox_store import InboxRepository, create_inbox_repository
from .models import Channel

logger = logging.getLogger(__name__)


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": jsonable_encoder(exc.errors())},
    )


def create_app(
    settings: Settings | None = None,
    *,
    repository: InboxRepository | None = None,
    adapters: Mapping[Channel, ChannelAdapter] | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    logging.getLogger("inbox_web").setLevel(settings.log_level)

    secret_issues = runtime_secret_issues(settings)
    if secret_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(secret_issues)
                + ". Remediation: set the listed secrets or WEBHOOK_SIGNATURE_MODE=off for local development."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in secret_issues:
                logger.warning("runtime secret guard warning: %s", issue)

    if repository is None:
        repository = create_inbox_repository(
            backend=settings.inbox_store_backend,
            database_url=settings.database_url,
        )
    if adapters is None:
        adapters = create_channel_adapters(settings)

    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.state.settings = settings
    app.state.inbox_service = InboxService(repository=repository, adapters=adapters)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_allowed_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(RequestValidationError, _validation_error_handler)

    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
