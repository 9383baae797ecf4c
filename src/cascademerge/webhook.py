"""HTTP ingress for Bitbucket webhooks.

Bitbucket is configured to call ``POST /cascading-merge?key=<shared key>`` for
``pullrequest:fulfilled`` and for the status events used to re-check pending
cascade pull requests.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import secrets
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from cascademerge.events import PayloadError, decode_payload, parse_cascade_event
from cascademerge.observability import log_event, log_warning_event
from cascademerge.service import CascadeService


LOGGER = logging.getLogger("cascademerge.webhook")
WEBHOOK_PATH = "/cascading-merge"
EVENT_KEY_HEADER = "X-Event-Key"


def create_app(service: CascadeService, *, shared_key: str) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        service.shutdown(wait=False)

    app = FastAPI(title="cascademerge", version="0.1.0", lifespan=lifespan)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get(WEBHOOK_PATH)
    async def webhook_reachability_check() -> dict[str, str]:
        return {}

    @app.post(WEBHOOK_PATH)
    async def webhook(request: Request) -> JSONResponse:
        if not _key_matches(request.query_params.get("key"), shared_key):
            log_warning_event(
                LOGGER,
                "webhook_rejected",
                reason="invalid_key",
                client=request.client.host if request.client else None,
            )
            return JSONResponse({"error": "unauthorized"}, status_code=401)

        event_key = request.headers.get(EVENT_KEY_HEADER)
        body = await request.body()
        try:
            event = parse_cascade_event(event_key, decode_payload(body))
        except PayloadError as exc:
            log_warning_event(
                LOGGER,
                "webhook_payload_invalid",
                event_key=event_key,
                error=str(exc),
                body_bytes=len(body),
            )
            return JSONResponse({"error": str(exc)}, status_code=400)

        service.submit(event)
        log_event(
            LOGGER,
            "webhook_accepted",
            event_key=event_key,
            repo_full_name=event.repository.full_name,
            trigger=event.trigger,
        )
        return JSONResponse({})

    return app


def _key_matches(provided: str | None, expected: str) -> bool:
    if not provided:
        log_event(LOGGER, "webhook_key_missing")
        return False
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
