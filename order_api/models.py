"""
Order document as stored and served. Wire names are camelCase (deviceName, orderConfirmed).
"""
from pydantic import BaseModel, ConfigDict, Field


class Order(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    device_name: str = Field(..., alias="deviceName")
    order_confirmed: bool = Field(default=False, alias="orderConfirmed")
    status: int = 0
    completed: bool = False

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True)


def new_order_fields(device_name: str) -> dict:
    """Fields of a freshly created order: unconfirmed, status 0, not completed."""
    return {
        "deviceName": device_name,
        "orderConfirmed": False,
        "status": 0,
        "completed": False,
    }
