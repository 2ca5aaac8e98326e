from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from duka_billing.core.config import settings
from duka_billing.core.logging_config import configure_logging
from duka_billing.routers import admin, subscriptions, webhooks
from duka_billing.services.dispatch_service import DispatchConfig, Dispatcher

OPENAPI_TAGS = [
    {"name": "Webhooks", "description": "Inbound payment provider events."},
    {"name": "Subscriptions", "description": "Read, cancel and reactivate shop subscriptions."},
    {"name": "Admin", "description": "Forced sweeps, dunning runs, ledger replay and audits."},
]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    configure_logging()
    dispatcher = Dispatcher(DispatchConfig.from_settings())
    await dispatcher.start()
    app.state.dispatcher = dispatcher
    try:
        yield
    finally:
        await dispatcher.close()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.version,
    description=(
        "Subscription billing lifecycle for shops: scheduled sweep, dunning "
        "notifications and idempotent payment webhook ingestion."
    ),
    openapi_tags=OPENAPI_TAGS,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhooks.router, tags=["Webhooks"])
app.include_router(subscriptions.router, prefix="/v1/subscriptions", tags=["Subscriptions"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root() -> dict[str, str]:
    return {
        "app": settings.APP_NAME,
        "version": settings.version,
        "status": "running",
    }
