"""
Redis-backed order store. Each order is a JSON document at "<prefix>:doc:<id>", kept apart from
the bookkeeping keys: "<prefix>:index" is a sorted set (score = creation sequence) used for scans
in insertion order, "<prefix>:seq" is the sequence counter.
"""
import uuid

import redis.asyncio as redis
from pydantic import ValidationError

from order_api.models import Order
from order_api.store import OrderStore, StoreError


class RedisOrderStore(OrderStore):
    def __init__(self, redis_url: str = "redis://localhost:6379/0", key_prefix: str = "orders", client: redis.Redis | None = None):
        self._redis_url = redis_url
        self._prefix = key_prefix
        self._redis: redis.Redis | None = client

    @property
    def index_key(self) -> str:
        return f"{self._prefix}:index"

    @property
    def seq_key(self) -> str:
        return f"{self._prefix}:seq"

    def doc_key(self, order_id: str) -> str:
        return f"{self._prefix}:doc:{order_id}"

    async def open(self) -> None:
        if self._redis is None:
            self._redis = redis.from_url(self._redis_url, decode_responses=True)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> redis.Redis:
        if self._redis is None:
            await self.open()
        return self._redis

    async def create(self, fields: dict) -> str:
        order_id = uuid.uuid4().hex
        order = Order.model_validate({**fields, "id": order_id})
        r = await self._client()
        try:
            seq = await r.incr(self.seq_key)
            async with r.pipeline(transaction=False) as pipe:
                pipe.set(self.doc_key(order_id), order.model_dump_json(by_alias=True))
                pipe.zadd(self.index_key, {order_id: seq})
                await pipe.execute()
        except redis.RedisError as e:
            raise StoreError(f"create failed: {e}") from e
        return order_id

    async def get_by_id(self, order_id: str) -> Order | None:
        r = await self._client()
        try:
            raw = await r.get(self.doc_key(order_id))
        except redis.RedisError as e:
            raise StoreError(f"get {order_id} failed: {e}") from e
        if raw is None:
            return None
        return self._decode(raw)

    async def get_all(self) -> list[Order]:
        r = await self._client()
        try:
            ids = await r.zrange(self.index_key, 0, -1)
            if not ids:
                return []
            raws = await r.mget([self.doc_key(i) for i in ids])
        except redis.RedisError as e:
            raise StoreError(f"scan failed: {e}") from e
        # index entries whose document vanished between ZRANGE and MGET are skipped
        return [self._decode(raw) for raw in raws if raw is not None]

    async def save(self, order: Order) -> None:
        r = await self._client()
        try:
            seq = await r.incr(self.seq_key)
            async with r.pipeline(transaction=False) as pipe:
                pipe.set(self.doc_key(order.id), order.model_dump_json(by_alias=True))
                pipe.zadd(self.index_key, {order.id: seq}, nx=True)
                await pipe.execute()
        except redis.RedisError as e:
            raise StoreError(f"save {order.id} failed: {e}") from e

    async def delete_by_id(self, order_id: str) -> None:
        r = await self._client()
        try:
            async with r.pipeline(transaction=False) as pipe:
                pipe.delete(self.doc_key(order_id))
                pipe.zrem(self.index_key, order_id)
                await pipe.execute()
        except redis.RedisError as e:
            raise StoreError(f"delete {order_id} failed: {e}") from e

    @staticmethod
    def _decode(raw: str) -> Order:
        try:
            return Order.model_validate_json(raw)
        except ValidationError as e:
            raise StoreError(f"corrupt order document: {e}") from e
