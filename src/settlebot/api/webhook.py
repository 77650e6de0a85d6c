from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from settlebot.services.event_ingestor import EventIngestor

WEBHOOK_PATH = "/webhooks/hosting"


def create_app(ingestor: EventIngestor) -> FastAPI:
    app = FastAPI(title="settlebot", docs_url=None, redoc_url=None)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post(WEBHOOK_PATH)
    async def hosting_webhook(request: Request) -> JSONResponse:
        raw_body = await request.body()
        # Settlement blocks on ledger confirmation; keep it off the event loop.
        response = await run_in_threadpool(
            ingestor.handle, request.headers.get("authorization"), raw_body
        )
        return JSONResponse(status_code=response.status_code, content=response.body)

    return app
