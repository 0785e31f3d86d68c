"""
Order lifecycle controller: create / confirm / inspect / delete orders, and the advancement
continuation that, once an order is confirmed, steps its status up to the terminal threshold.

Each tick waits one interval, fetches the latest record, writes the continuation's own counter + 1
into it and saves it back (full overwrite, no version check). The counter is never re-read from the
store, so two continuations on the same order race on every tick; AdvancementRegistry keeps at most
one per order id for continuations started through the controller.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from order_api.config import Settings
from order_api.metrics import (
    advancement_aborted_total,
    advancement_retries_total,
    advancement_ticks_total,
    advancements_active,
    orders_completed_total,
    orders_confirmed_total,
    orders_created_total,
    orders_deleted_total,
)
from order_api.models import Order, new_order_fields
from order_api.order_state import PHASE_COMPLETED, TERMINAL_STATUS, Advancing, Completed, apply_state, phase_of, tick
from order_api.scheduler import AsyncioScheduler, Scheduler
from order_api.store import OrderNotFoundError, OrderStore, StoreError, is_open

logger = logging.getLogger(__name__)

ABORT_NOT_FOUND = "not_found"
ABORT_STORE_ERROR = "store_error"


class InsufficientDataError(Exception):
    """Raised when an order is created without a device name. Nothing is persisted."""


@dataclass(frozen=True)
class Aborted:
    """A continuation that stopped before completion (order gone, or store kept failing)."""
    order_id: str
    last_known_status: int
    reason: str


async def _tick_once(store: OrderStore, state: Advancing, terminal_status: int) -> Advancing | Completed:
    order = await store.get_by_id(state.order_id)
    if order is None:
        raise OrderNotFoundError(state.order_id)
    next_state = tick(state, terminal_status)
    await store.save(apply_state(order, next_state))
    return next_state


async def run_advancement(
    store: OrderStore,
    order_id: str,
    status: int,
    *,
    scheduler: Scheduler,
    interval_seconds: float = 60.0,
    terminal_status: int = TERMINAL_STATUS,
    max_retries: int = 3,
    retry_base_seconds: float = 1.0,
) -> Completed | Aborted:
    """
    Drive one order from `status` to terminal_status, one step per interval.
    Not guarded against a second continuation for the same order; use the controller for that.
    Never raises for store problems: returns Completed, or Aborted with the reason.
    """
    state = Advancing(order_id=order_id, last_known_status=status)
    while True:
        await scheduler.sleep(interval_seconds)

        attempts = 0
        while True:
            try:
                next_state = await _tick_once(store, state, terminal_status)
                break
            except OrderNotFoundError:
                logger.warning("Order %s not found at tick (status=%d), stopping advancement", order_id, state.last_known_status)
                advancement_aborted_total.labels(reason=ABORT_NOT_FOUND).inc()
                return Aborted(order_id, state.last_known_status, ABORT_NOT_FOUND)
            except StoreError as e:
                attempts += 1
                if attempts > max_retries:
                    logger.error(
                        "Giving up advancing order %s after %d attempts (status=%d): %s",
                        order_id, attempts, state.last_known_status, e,
                    )
                    advancement_aborted_total.labels(reason=ABORT_STORE_ERROR).inc()
                    return Aborted(order_id, state.last_known_status, ABORT_STORE_ERROR)
                backoff_sec = retry_base_seconds * 2 ** (attempts - 1)
                logger.warning(
                    "Store error advancing order %s, retrying in %.1fs (attempt %d/%d): %s",
                    order_id, backoff_sec, attempts, max_retries, e,
                )
                advancement_retries_total.inc()
                await scheduler.sleep(backoff_sec)

        advancement_ticks_total.inc()
        if isinstance(next_state, Completed):
            logger.info("Order %s completed at status %d", order_id, next_state.status)
            orders_completed_total.inc()
            return next_state
        logger.info("Order %s advanced to status %d", order_id, next_state.last_known_status)
        state = next_state


class AdvancementRegistry:
    """
    At most one running continuation per order id. Starting another while one is active is a no-op.
    Finished continuations unregister themselves.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def is_active(self, order_id: str) -> bool:
        return order_id in self._tasks

    def task_for(self, order_id: str) -> asyncio.Task | None:
        return self._tasks.get(order_id)

    def start(self, order_id: str, factory: Callable[[], Awaitable]) -> bool:
        if order_id in self._tasks:
            logger.info("Advancement already running for order %s, not starting another", order_id)
            return False
        task = asyncio.create_task(factory(), name=f"advance-{order_id}")
        self._tasks[order_id] = task
        advancements_active.set(len(self._tasks))
        task.add_done_callback(lambda t: self._finished(order_id, t))
        return True

    def _finished(self, order_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(order_id) is task:
            del self._tasks[order_id]
        advancements_active.set(len(self._tasks))
        if not task.cancelled() and task.exception() is not None:
            logger.error("Advancement for order %s crashed", order_id, exc_info=task.exception())

    async def shutdown(self, wait_seconds: float = 5.0) -> None:
        tasks = list(self._tasks.values())
        if not tasks:
            return
        logger.info("Shutdown: waiting for %d advancement(s) (max %.1fs) ...", len(tasks), wait_seconds)
        _, pending = await asyncio.wait(tasks, timeout=wait_seconds, return_when=asyncio.ALL_COMPLETED)
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info("Cancelled %d pending advancement(s)", len(pending))


class OrderLifecycleController:
    def __init__(
        self,
        store: OrderStore,
        scheduler: Scheduler | None = None,
        *,
        interval_seconds: float = 60.0,
        terminal_status: int = TERMINAL_STATUS,
        max_retries: int = 3,
        retry_base_seconds: float = 1.0,
        registry: AdvancementRegistry | None = None,
    ):
        self.store = store
        self.scheduler = scheduler or AsyncioScheduler()
        self.interval_seconds = interval_seconds
        self.terminal_status = terminal_status
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self.registry = registry if registry is not None else AdvancementRegistry()

    @classmethod
    def from_settings(cls, store: OrderStore, settings: Settings, scheduler: Scheduler | None = None) -> "OrderLifecycleController":
        return cls(
            store,
            scheduler,
            interval_seconds=settings.advance_interval_seconds,
            terminal_status=settings.terminal_status,
            max_retries=settings.advance_max_retries,
            retry_base_seconds=settings.advance_retry_base_seconds,
        )

    async def create_order(self, device_name: str | None) -> str:
        if not device_name:
            raise InsufficientDataError("deviceName is required")
        order_id = await self.store.create(new_order_fields(device_name))
        orders_created_total.inc()
        logger.info("Created order %s for device %s", order_id, device_name)
        return order_id

    async def confirm_order(self, order_id: str) -> Order:
        """
        Set orderConfirmed and persist, then start advancement from the status read here.
        Re-confirming writes nothing, so a tick saved meanwhile is never overwritten; it only
        restarts advancement if none is running. A completed order is not advanced again.
        """
        order = await self.get_order(order_id)
        status = order.status
        orders_confirmed_total.inc()
        if order.order_confirmed:
            logger.info("Order %s already confirmed (status=%d)", order_id, status)
        else:
            order.order_confirmed = True
            await self.store.save(order)
            logger.info("Confirmed order %s at status %d", order_id, status)

        if phase_of(order, self.terminal_status) == PHASE_COMPLETED:
            logger.info("Order %s already completed, advancement not started", order_id)
        else:
            self.start_advancement(order_id, status)
        return order

    def start_advancement(self, order_id: str, status: int) -> bool:
        return self.registry.start(
            order_id,
            lambda: run_advancement(
                self.store,
                order_id,
                status,
                scheduler=self.scheduler,
                interval_seconds=self.interval_seconds,
                terminal_status=self.terminal_status,
                max_retries=self.max_retries,
                retry_base_seconds=self.retry_base_seconds,
            ),
        )

    async def get_order(self, order_id: str) -> Order:
        order = await self.store.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def get_status(self, order_id: str) -> int:
        return (await self.get_order(order_id)).status

    async def list_orders(self) -> list[Order]:
        return await self.store.get_all()

    async def list_open_orders(self) -> list[Order]:
        return await self.store.get_all_where(is_open)

    async def delete_order(self, order_id: str) -> None:
        """Remove the order. A running continuation is left alone and stops at its next fetch."""
        await self.get_order(order_id)
        await self.store.delete_by_id(order_id)
        orders_deleted_total.inc()
        logger.info("Deleted order %s", order_id)

    async def shutdown(self, wait_seconds: float = 5.0) -> None:
        await self.registry.shutdown(wait_seconds)
