"""Demo application factory.

A small FastAPI service instrumented with spanline: nested spans around a
CPU-heavy computation, async spans around simulated I/O, a manual child of
the active span, deliberately failing routes and an in-memory product API.

Usage::

    from spanline.demo import create_app

    app = create_app()
    # uvicorn.run(app, host="0.0.0.0", port=3000)

Requires the ``demo`` extra::

    pip install spanline[demo]
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

import structlog

from spanline.core.config import TracingConfig
from spanline.core.constants import SpanOperation
from spanline.demo.products import Product, ProductIn, ProductStore
from spanline.integrations.fastapi import create_tracing_router, get_tracer, install_tracing
from spanline.tracing.tracer import Tracer

logger = structlog.get_logger(__name__)

DB_LATENCY = 0.1
HTTP_LATENCY = 0.2


def complex_operation(n: int = 100_000) -> int:
    total = 0
    for i in range(n):
        total += i
    return total


def create_app(
    tracer: Tracer | None = None,
    *,
    config: TracingConfig | None = None,
    latency_scale: float = 1.0,
) -> FastAPI:
    """Create the demo FastAPI application.

    Args:
        tracer: Tracer to instrument the app with. Built from *config*
            (or the environment) when omitted.
        config: Used only when *tracer* is omitted.
        latency_scale: Multiplier for the simulated I/O delays; tests pass
            ``0`` to skip sleeping.
    """
    if tracer is None:
        tracer = Tracer(config=config) if config is not None else Tracer.from_env()

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        tracer.start()
        try:
            yield
        finally:
            tracer.shutdown()

    app = FastAPI(title="spanline demo", version="0.1.0", lifespan=lifespan)
    app.state.products = ProductStore(tracer)
    install_tracing(app, tracer)
    app.include_router(create_tracing_router())

    @app.get("/")
    async def hello() -> dict[str, str]:
        return {"message": "Hello World"}

    @app.get("/debug-error")
    async def debug_error() -> dict[str, str]:
        raise RuntimeError("Test tracing error!")

    @app.get("/heavy")
    async def heavy(request: Request, n: int = Query(default=1_000_000, ge=1)) -> dict[str, int]:
        tr = get_tracer(request)
        outer = tr.start_span("heavy-computation", SpanOperation.FUNCTION)
        with tr.use_span(outer):
            calc = tr.start_span("calculate-sqrt", SpanOperation.CALCULATION)
            values = [math.sqrt(i) for i in range(n)]
            calc.set_attribute("items", len(values))
            calc.end()

            process = tr.start_span("process-results", SpanOperation.PROCESSING)
            filtered = [x for x in values if x > 100]
            process.set_attribute("items", len(filtered))
            process.end()
        outer.end()
        return {"computed": len(values), "filtered": len(filtered)}

    @app.get("/api/users/{user_id}")
    async def get_user(request: Request, user_id: str) -> dict[str, Any]:
        tr = get_tracer(request)

        async def _query_user() -> dict[str, str]:
            await asyncio.sleep(DB_LATENCY * latency_scale)
            return {"id": user_id, "name": "John Doe"}

        async def _fetch_profile() -> dict[str, int]:
            await asyncio.sleep(HTTP_LATENCY * latency_scale)
            return {"credits": 100, "level": 5}

        db_span = tr.start_span("db.query.user", SpanOperation.DB_QUERY)
        try:
            user = await tr.run_with_span(db_span, _query_user)
        finally:
            db_span.end()

        http_span = tr.start_span("http.client.fetch", SpanOperation.HTTP_CLIENT)
        try:
            additional = await tr.run_with_span(http_span, _fetch_profile)
        finally:
            http_span.end()

        return {"user": user, "additionalData": additional}

    @app.get("/manual-span")
    async def manual_span(request: Request) -> dict[str, int]:
        tr = get_tracer(request)
        active = tr.current_span()
        if active is None:
            return {"result": complex_operation()}
        child = tr.start_span("My custom operation", SpanOperation.CUSTOM, parent=active)
        result = complex_operation()
        child.end()
        return {"result": result}

    @app.get("/error/timeout")
    async def timeout_route(
        request: Request,
        seconds: float = Query(default=5.0, ge=0),
        limit: float = Query(default=1.0, gt=0),
    ) -> dict[str, float]:
        span = get_tracer(request).start_span("slow-operation", SpanOperation.FUNCTION)
        span.set_attribute("timeout_seconds", limit)
        try:
            await asyncio.wait_for(asyncio.sleep(seconds * latency_scale), timeout=limit)
        except TimeoutError as exc:
            span.set_error(f"operation exceeded {limit}s")
            span.end()
            raise HTTPException(status_code=504, detail="Operation timed out") from exc
        span.end()
        return {"slept": seconds}

    # -- products ----------------------------------------------------------

    @app.get("/api/products")
    async def list_products(request: Request) -> list[Product]:
        return request.app.state.products.list_products()

    @app.get("/api/products/{product_id}")
    async def get_product(request: Request, product_id: int) -> Product:
        product = request.app.state.products.get(product_id)
        if product is None:
            raise HTTPException(status_code=404, detail="Product not found")
        return product

    @app.post("/api/products", status_code=201)
    async def create_product(request: Request, data: ProductIn) -> Product:
        return request.app.state.products.create(data)

    @app.put("/api/products/{product_id}")
    async def update_product(request: Request, product_id: int, data: ProductIn) -> Product:
        product = request.app.state.products.update(product_id, data)
        if product is None:
            raise HTTPException(status_code=404, detail="Product not found")
        return product

    @app.delete("/api/products/{product_id}")
    async def delete_product(request: Request, product_id: int) -> JSONResponse:
        if not request.app.state.products.delete(product_id):
            raise HTTPException(status_code=404, detail="Product not found")
        return JSONResponse(content={"deleted": product_id})

    logger.info("demo_app_created", environment=tracer.config.environment)
    return app
