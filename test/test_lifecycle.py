"""
Order lifecycle controller and advancement continuations, driven by a ManualScheduler:
each fire() ends one interval, so one fire == one tick.
"""
import asyncio

import pytest

from order_api.lifecycle import (
    ABORT_NOT_FOUND,
    ABORT_STORE_ERROR,
    Aborted,
    AdvancementRegistry,
    InsufficientDataError,
    OrderLifecycleController,
    run_advancement,
)
from order_api.models import new_order_fields
from order_api.order_state import Completed
from order_api.store import OrderNotFoundError

from _helper import FlakyStore, GatedSaveStore, ManualScheduler, RecordingStore, settle

pytestmark = pytest.mark.asyncio

INTERVAL = 60.0


def _controller(store, scheduler) -> OrderLifecycleController:
    return OrderLifecycleController(store, scheduler, interval_seconds=INTERVAL)


# --- creation ---

@pytest.mark.parametrize("device_name", ["", None])
async def test_create_without_device_name_persists_nothing(device_name):
    store = RecordingStore()
    controller = _controller(store, ManualScheduler())

    with pytest.raises(InsufficientDataError):
        await controller.create_order(device_name)

    assert await store.get_all() == []


async def test_create_persists_defaults():
    store = RecordingStore()
    controller = _controller(store, ManualScheduler())

    order_id = await controller.create_order("thermostat-1")

    order = await controller.get_order(order_id)
    assert order.id == order_id
    assert order.device_name == "thermostat-1"
    assert order.status == 0
    assert order.completed is False
    assert order.order_confirmed is False


# --- confirmation and full lifecycle ---

async def test_confirm_sets_flag_and_keeps_status():
    store = RecordingStore()
    scheduler = ManualScheduler()
    controller = _controller(store, scheduler)
    order_id = await controller.create_order("lamp-2")

    order = await controller.confirm_order(order_id)
    await settle()

    assert order.order_confirmed is True
    stored = await store.get_by_id(order_id)
    assert stored.order_confirmed is True
    assert stored.status == 0
    assert controller.registry.is_active(order_id)
    assert scheduler.pending == 1
    await controller.shutdown(0)


async def test_confirmed_order_completes_after_six_ticks_and_stops():
    store = RecordingStore()
    scheduler = ManualScheduler()
    controller = _controller(store, scheduler)
    order_id = await controller.create_order("thermostat-1")
    await controller.confirm_order(order_id)
    await settle()
    store.saves.clear()

    statuses = []
    for _ in range(6):
        assert await scheduler.fire() == 1
        statuses.append(await controller.get_status(order_id))

    assert statuses == [1, 2, 3, 4, 5, 6]
    order = await controller.get_order(order_id)
    assert order.completed is True
    assert order.order_confirmed is True

    # nothing left scheduled, status stays put
    assert scheduler.pending == 0
    assert await scheduler.fire() == 0
    assert await controller.get_status(order_id) == 6
    assert not controller.registry.is_active(order_id)
    assert scheduler.slept == [INTERVAL] * 6


async def test_single_continuation_persists_clean_sequence():
    store = RecordingStore()
    scheduler = ManualScheduler()
    controller = _controller(store, scheduler)
    order_id = await controller.create_order("thermostat-1")
    await controller.confirm_order(order_id)
    await settle()
    store.saves.clear()

    while await scheduler.fire():
        pass

    assert store.status_trace(order_id) == [1, 2, 3, 4, 5, 6]
    assert store.completion_saves(order_id) == 1


async def test_confirm_twice_keeps_flag_and_runs_one_continuation():
    store = RecordingStore()
    scheduler = ManualScheduler()
    controller = _controller(store, scheduler)
    order_id = await controller.create_order("thermostat-1")

    await controller.confirm_order(order_id)
    await settle()
    await scheduler.fire()
    await scheduler.fire()
    store.saves.clear()
    order = await controller.confirm_order(order_id)
    await settle()

    assert order.order_confirmed is True
    assert order.status == 2
    assert store.saves == []
    assert scheduler.pending == 1

    while await scheduler.fire():
        pass
    assert store.status_trace(order_id) == [3, 4, 5, 6]
    assert store.completion_saves(order_id) == 1


async def test_reconfirm_during_tick_does_not_roll_status_back():
    store = GatedSaveStore()
    scheduler = ManualScheduler()
    controller = _controller(store, scheduler)
    order_id = await controller.create_order("thermostat-1")
    await controller.confirm_order(order_id)
    await settle()
    await scheduler.fire()
    await scheduler.fire()
    store.saves.clear()

    # any save from the second confirmation is held back until after the next tick
    reconfirm = asyncio.create_task(controller.confirm_order(order_id))
    store.gated_task = reconfirm
    await settle()
    await scheduler.fire()
    store.release()
    await reconfirm

    assert store.status_trace(order_id) == [3]
    assert await controller.get_status(order_id) == 3
    assert (await controller.get_order(order_id)).order_confirmed is True
    await controller.shutdown(0)


async def test_reconfirm_restarts_advancement_when_none_running():
    store = RecordingStore()
    scheduler = ManualScheduler()
    controller = _controller(store, scheduler)
    order_id = await store.create({**new_order_fields("thermostat-1"), "orderConfirmed": True, "status": 4})

    await controller.confirm_order(order_id)
    await settle()
    assert store.saves == []

    while await scheduler.fire():
        pass
    assert store.status_trace(order_id) == [5, 6]


async def test_confirm_completed_order_does_not_advance_again():
    store = RecordingStore()
    scheduler = ManualScheduler()
    controller = _controller(store, scheduler)
    order_id = await store.create({**new_order_fields("thermostat-1"), "status": 6, "completed": True})

    order = await controller.confirm_order(order_id)
    await settle()

    assert order.order_confirmed is True
    assert scheduler.pending == 0
    assert len(controller.registry) == 0


# --- queries ---

async def test_list_and_open_orders():
    store = RecordingStore()
    controller = _controller(store, ManualScheduler())
    open_id = await controller.create_order("a")
    done_id = await store.create({**new_order_fields("b"), "status": 6, "completed": True})

    assert [o.id for o in await controller.list_orders()] == [open_id, done_id]
    assert [o.id for o in await controller.list_open_orders()] == [open_id]


async def test_delete_removes_order():
    store = RecordingStore()
    controller = _controller(store, ManualScheduler())
    order_id = await controller.create_order("a")

    await controller.delete_order(order_id)

    assert await store.get_by_id(order_id) is None
    with pytest.raises(OrderNotFoundError):
        await controller.get_order(order_id)


@pytest.mark.parametrize("operation", ["get_order", "get_status", "confirm_order", "delete_order"])
async def test_missing_order_signals_not_found(operation):
    controller = _controller(RecordingStore(), ManualScheduler())

    with pytest.raises(OrderNotFoundError) as excinfo:
        await getattr(controller, operation)("does-not-exist")

    assert excinfo.value.order_id == "does-not-exist"


# --- hazards ---

async def test_two_continuations_for_same_order_corrupt_status_trace():
    """Double confirmation without the registry: both continuations write their own counters."""
    store = RecordingStore()
    scheduler = ManualScheduler()
    order_id = await store.create(new_order_fields("thermostat-1"))

    first = asyncio.create_task(run_advancement(store, order_id, 0, scheduler=scheduler, interval_seconds=INTERVAL))
    second = asyncio.create_task(run_advancement(store, order_id, 0, scheduler=scheduler, interval_seconds=INTERVAL))
    await settle()
    while await scheduler.fire():
        pass

    trace = store.status_trace(order_id)
    assert trace != [1, 2, 3, 4, 5, 6]
    assert len(trace) == 12
    assert store.completion_saves(order_id) == 2
    assert isinstance(first.result(), Completed)
    assert isinstance(second.result(), Completed)


async def test_stale_second_continuation_moves_status_backwards():
    store = RecordingStore()
    scheduler = ManualScheduler()
    order_id = await store.create(new_order_fields("thermostat-1"))

    asyncio.create_task(run_advancement(store, order_id, 0, scheduler=scheduler, interval_seconds=INTERVAL))
    await settle()
    for _ in range(3):
        await scheduler.fire()
    asyncio.create_task(run_advancement(store, order_id, 0, scheduler=scheduler, interval_seconds=INTERVAL))
    await settle()
    while await scheduler.fire():
        pass

    trace = store.status_trace(order_id)
    assert trace[:3] == [1, 2, 3]
    assert any(later < earlier for earlier, later in zip(trace, trace[1:]))
    # a completed record rewritten below the terminal status
    assert any(completed and status < 6 for oid, status, completed in store.saves if oid == order_id)
    assert store.completion_saves(order_id) >= 2


async def test_registry_prevents_second_continuation():
    store = RecordingStore()
    scheduler = ManualScheduler()
    controller = _controller(store, scheduler)
    order_id = await controller.create_order("thermostat-1")

    assert controller.start_advancement(order_id, 0) is True
    assert controller.start_advancement(order_id, 0) is False
    await settle()
    assert scheduler.pending == 1

    while await scheduler.fire():
        pass
    assert store.status_trace(order_id) == [1, 2, 3, 4, 5, 6]


async def test_delete_during_advancement_stops_continuation():
    store = RecordingStore()
    scheduler = ManualScheduler()
    controller = _controller(store, scheduler)
    order_id = await controller.create_order("thermostat-1")
    await controller.confirm_order(order_id)
    await settle()
    await scheduler.fire()
    await scheduler.fire()
    task = controller.registry.task_for(order_id)

    await controller.delete_order(order_id)
    await scheduler.fire()

    assert task.done()
    assert task.result() == Aborted(order_id, 2, ABORT_NOT_FOUND)
    assert scheduler.pending == 0
    assert not controller.registry.is_active(order_id)
    assert await store.get_by_id(order_id) is None


# --- store failures inside a tick ---

async def test_store_error_is_retried_with_backoff():
    store = FlakyStore()
    scheduler = ManualScheduler()
    order_id = await store.create(new_order_fields("thermostat-1"))
    store.fail_gets = 2

    task = asyncio.create_task(run_advancement(
        store, order_id, 4, scheduler=scheduler, interval_seconds=INTERVAL, max_retries=3, retry_base_seconds=1.0,
    ))
    await settle()
    while await scheduler.fire():
        pass

    assert scheduler.slept == [INTERVAL, 1.0, 2.0, INTERVAL]
    assert store.status_trace(order_id) == [5, 6]
    assert task.result() == Completed(order_id, 6)


async def test_store_error_gives_up_after_max_retries():
    store = FlakyStore()
    scheduler = ManualScheduler()
    order_id = await store.create(new_order_fields("thermostat-1"))
    store.fail_gets = 10

    task = asyncio.create_task(run_advancement(
        store, order_id, 0, scheduler=scheduler, interval_seconds=INTERVAL, max_retries=2, retry_base_seconds=0.5,
    ))
    await settle()
    while await scheduler.fire():
        pass

    assert task.result() == Aborted(order_id, 0, ABORT_STORE_ERROR)
    assert scheduler.slept == [INTERVAL, 0.5, 1.0]
    assert store.saves == []


# --- registry ---

async def test_registry_shutdown_cancels_sleeping_continuations():
    store = RecordingStore()
    scheduler = ManualScheduler()
    registry = AdvancementRegistry()
    controller = OrderLifecycleController(store, scheduler, registry=registry)
    first = await controller.create_order("a")
    second = await controller.create_order("b")
    await controller.confirm_order(first)
    await controller.confirm_order(second)
    await settle()
    assert len(registry) == 2

    await controller.shutdown(0.01)

    assert len(registry) == 0
    assert store.status_trace(first) == [0]
    assert store.status_trace(second) == [0]
