from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import JSONResponse

from order_api.lifecycle import InsufficientDataError, OrderLifecycleController

router = APIRouter(tags=["orders"])


def get_controller(request: Request) -> OrderLifecycleController:
    return request.app.state.controller


def _documents(orders) -> list[dict]:
    return [o.to_document() for o in orders]


# Fixed paths are registered before "/{order_id}" so they are not captured as ids.

@router.get("/")
async def list_orders(controller: OrderLifecycleController = Depends(get_controller)) -> list[dict]:
    return _documents(await controller.list_orders())


@router.get("/open")
async def list_open_orders(controller: OrderLifecycleController = Depends(get_controller)) -> list[dict]:
    """Orders that have not reached the terminal status yet."""
    return _documents(await controller.list_open_orders())


@router.post("/new")
async def create_order(
    device_name: str | None = Form(default=None, alias="deviceName"),
    controller: OrderLifecycleController = Depends(get_controller),
):
    """Create an order for a device. Returns the new order id."""
    try:
        order_id = await controller.create_order(device_name)
    except InsufficientDataError:
        return JSONResponse(status_code=200, content={"message": "Nothing Created. Not enough data."})
    return order_id


@router.get("/confirm/{order_id}")
async def confirm_order(order_id: str, controller: OrderLifecycleController = Depends(get_controller)) -> dict:
    """Confirm an order and start advancing its status."""
    await controller.confirm_order(order_id)
    return {"message": "confirmed"}


@router.get("/status/{order_id}")
async def order_status(order_id: str, controller: OrderLifecycleController = Depends(get_controller)) -> int:
    return await controller.get_status(order_id)


@router.get("/{order_id}")
async def get_order(order_id: str, controller: OrderLifecycleController = Depends(get_controller)) -> dict:
    return (await controller.get_order(order_id)).to_document()


@router.delete("/{order_id}")
async def delete_order(order_id: str, controller: OrderLifecycleController = Depends(get_controller)) -> dict:
    await controller.delete_order(order_id)
    return {"message": "Device Removed"}
