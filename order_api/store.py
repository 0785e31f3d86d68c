"""
Order store contract plus an in-process backend.
No transactions and no version checks: save() overwrites the whole document, last writer wins.
"""
import uuid
from abc import ABC, abstractmethod
from typing import Callable

from order_api.config import Settings
from order_api.models import Order

OrderPredicate = Callable[[Order], bool]


class StoreError(Exception):
    """Raised when the backend fails (connection loss, write failure)."""


class OrderNotFoundError(Exception):
    """Raised when an order id has no matching record."""
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(order_id)


def is_open(order: Order) -> bool:
    return not order.completed


class OrderStore(ABC):
    async def open(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def create(self, fields: dict) -> str:
        """Persist a new record and return its assigned id."""

    @abstractmethod
    async def get_by_id(self, order_id: str) -> Order | None:
        """Current state of one order, or None if it does not exist."""

    @abstractmethod
    async def get_all(self) -> list[Order]:
        ...

    async def get_all_where(self, predicate: OrderPredicate) -> list[Order]:
        return [order for order in await self.get_all() if predicate(order)]

    @abstractmethod
    async def save(self, order: Order) -> None:
        """Upsert the full state of a record the caller already holds."""

    @abstractmethod
    async def delete_by_id(self, order_id: str) -> None:
        """Remove a record. Deleting a missing id is not an error."""


class InMemoryOrderStore(OrderStore):
    def __init__(self) -> None:
        self._docs: dict[str, dict] = {}

    async def create(self, fields: dict) -> str:
        order_id = uuid.uuid4().hex
        order = Order.model_validate({**fields, "id": order_id})
        self._docs[order_id] = order.to_document()
        return order_id

    async def get_by_id(self, order_id: str) -> Order | None:
        doc = self._docs.get(order_id)
        if doc is None:
            return None
        return Order.model_validate(doc)

    async def get_all(self) -> list[Order]:
        return [Order.model_validate(doc) for doc in self._docs.values()]

    async def save(self, order: Order) -> None:
        self._docs[order.id] = order.to_document()

    async def delete_by_id(self, order_id: str) -> None:
        self._docs.pop(order_id, None)


def build_store(settings: Settings) -> OrderStore:
    if settings.store_backend == "memory":
        return InMemoryOrderStore()
    from order_api.redis_store import RedisOrderStore
    return RedisOrderStore(settings.redis_url, key_prefix=settings.redis_key_prefix)
