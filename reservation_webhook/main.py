from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import logging
from contextlib import asynccontextmanager
from functools import lru_cache

from .db import PostgresRecordStore
from .settings import CONFIRMED_TABLE, CORS_ORIGINS, LOG_LEVEL, PENDING_TABLE, PORT, ProviderCredentials
from .webhook import (
    ReservationTransitioner,
    SignatureVerifier,
    WebhookHandler,
    WebhookObserver,
    is_form_encoded,
)

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Refuse to start without provider credentials.
    app.dependency_overrides.get(get_webhook_handler, get_webhook_handler)()
    yield


app = FastAPI(title="Reservation Payment Webhook", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache
def get_webhook_handler() -> WebhookHandler:
    observer = WebhookObserver()
    transitioner = ReservationTransitioner(
        store=PostgresRecordStore(),
        observer=observer,
        pending_table=PENDING_TABLE,
        confirmed_table=CONFIRMED_TABLE,
    )
    return WebhookHandler(SignatureVerifier(ProviderCredentials.from_env()), transitioner, observer)


@app.get("/health")
@app.get("/webhook/health")
def health():
    return {"status": "healthy"}


async def read_body(request: Request):
    content_type = request.headers.get("content-type")
    if is_form_encoded(content_type):
        form = await request.form()
        return dict(form), content_type
    return await request.body(), content_type


@app.post("/webhook/ipn")
@app.post("/webhook/")
async def ipn(request: Request, handler: WebhookHandler = Depends(get_webhook_handler)):
    """
    Payment provider IPN. Always answers with a JSON body; the status code
    tells the provider whether the delivery was accepted.
    """
    try:
        body, content_type = await read_body(request)
    except Exception:
        logger.exception("Could not read webhook body")
        return JSONResponse(status_code=400, content={"error": "Invalid custom_field format"})
    result = await handler.handle(body, content_type)
    return JSONResponse(status_code=result.status_code, content=result.body)


def run_server(host: str = "0.0.0.0", port: int = PORT) -> None:
    import uvicorn

    logger.info("Server running on port %s", port)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run_server()
