"""In-memory product store used by the demo API."""

from __future__ import annotations

import itertools
import threading

from pydantic import BaseModel, Field

from spanline.core.constants import SpanOperation
from spanline.tracing.span import Span
from spanline.tracing.tracer import Tracer


class ProductIn(BaseModel):
    name: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    description: str = ""


class Product(ProductIn):
    id: int


class ProductStore:
    """Process-lifetime product list. Each operation records a ``db.query`` span."""

    def __init__(self, tracer: Tracer, products: list[Product] | None = None) -> None:
        self._tracer = tracer
        self._products: list[Product] = list(products or [])
        start = max((p.id for p in self._products), default=0) + 1
        self._ids = itertools.count(start)
        self._lock = threading.Lock()

    def _span(self, statement: str) -> Span:
        span = self._tracer.start_span(f"products.{statement}", SpanOperation.DB_QUERY)
        span.set_attribute("db.system", "memory")
        span.set_attribute("db.statement", statement)
        return span

    def list_products(self) -> list[Product]:
        span = self._span("list")
        with self._lock:
            result = list(self._products)
        span.set_attribute("db.rows", len(result))
        span.end()
        return result

    def get(self, product_id: int) -> Product | None:
        span = self._span("get")
        span.set_attribute("product.id", product_id)
        with self._lock:
            found = next((p for p in self._products if p.id == product_id), None)
        span.set_attribute("db.rows", 0 if found is None else 1)
        span.end()
        return found

    def create(self, data: ProductIn) -> Product:
        span = self._span("create")
        with self._lock:
            product = Product(id=next(self._ids), **data.model_dump())
            self._products.append(product)
        span.set_attribute("product.id", product.id)
        span.end()
        return product

    def update(self, product_id: int, data: ProductIn) -> Product | None:
        span = self._span("update")
        span.set_attribute("product.id", product_id)
        updated: Product | None = None
        with self._lock:
            for index, existing in enumerate(self._products):
                if existing.id == product_id:
                    updated = Product(id=product_id, **data.model_dump())
                    self._products[index] = updated
                    break
        span.set_attribute("db.rows", 0 if updated is None else 1)
        span.end()
        return updated

    def delete(self, product_id: int) -> bool:
        span = self._span("delete")
        span.set_attribute("product.id", product_id)
        with self._lock:
            before = len(self._products)
            self._products = [p for p in self._products if p.id != product_id]
            removed = len(self._products) < before
        span.set_attribute("db.rows", int(removed))
        span.end()
        return removed
