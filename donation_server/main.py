import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from donation_server.api.donate_router import router as donate_router
from donation_server.api.merchant_router import router as merchant_router
from donation_server.config import Settings, load_settings
from donation_server.payme.dispatcher import Dispatcher
from donation_server.services.merchant_service import MerchantService, now_ms
from donation_server.services.store import Store


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[Store] = None,
    clock=now_ms,
) -> FastAPI:
    """Build the application; run with ``uvicorn donation_server.main:create_app --factory``."""
    settings = settings or load_settings()
    # A store passed in is owned by the caller, which also closes it
    owns_store = store is None
    store = store or Store(settings.database_url)
    service = MerchantService(store, ttl_ms=settings.transaction_ttl_ms, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await store.open()
        logging.info("Payme donation server started (checkout: %s)", settings.checkout_url)
        try:
            yield
        finally:
            if owns_store:
                await store.close()

    app = FastAPI(title="Payme donation server", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.dispatcher = Dispatcher(service, settings.account_field)

    app.include_router(donate_router)
    app.include_router(merchant_router)
    return app
