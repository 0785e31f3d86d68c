"""
HTTP service: order routes, /health, /metrics.
Run: python -m order_api.main  (or: uvicorn order_api.main:app)
"""
import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from order_api.config import Settings, settings as default_settings
from order_api.lifecycle import OrderLifecycleController
from order_api.metrics import get_metrics_bytes, get_metrics_content_type
from order_api.routes import orders
from order_api.scheduler import Scheduler
from order_api.store import OrderNotFoundError, OrderStore, StoreError, build_store

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    store: OrderStore | None = None,
    scheduler: Scheduler | None = None,
) -> FastAPI:
    settings = settings or default_settings
    store = store or build_store(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await store.open()
        app.state.controller = OrderLifecycleController.from_settings(store, settings, scheduler)
        logger.info("Order store ready (backend=%s)", type(store).__name__)
        yield
        await app.state.controller.shutdown(settings.shutdown_wait_seconds)
        await store.close()
        logger.info("Order API stopped.")

    app = FastAPI(title="Order API", lifespan=lifespan)
    app.include_router(orders.router, prefix=settings.api_prefix)

    @app.exception_handler(OrderNotFoundError)
    async def order_not_found(request: Request, exc: OrderNotFoundError) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content={"message": "Order not found", "orderId": exc.order_id},
        )

    @app.exception_handler(StoreError)
    async def store_unavailable(request: Request, exc: StoreError) -> JSONResponse:
        logger.error("Store error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=503,
            content={"message": "Order store unavailable"},
        )

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus scrape endpoint: order operations and advancement progress."""
        return Response(
            content=get_metrics_bytes(),
            media_type=get_metrics_content_type(),
        )

    return app


app = create_app()


def run() -> None:
    import uvicorn
    uvicorn.run(app, host=default_settings.host, port=default_settings.port)


if __name__ == "__main__":
    run()
