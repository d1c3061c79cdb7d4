from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional, Dict
from datetime import datetime
from storefront.models import ChangeType, OrderStatus


class ReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class StockAvailability(ReadModel):
    item_id: str
    stock: int
    reserved: int
    available: int
    min_stock: int
    is_low_stock: bool


class StockStatus(StockAvailability):
    name: str
    is_available: bool


class StockAdjustment(ReadModel):
    item_id: str
    stock: int
    version: int


class InventoryHistoryRead(ReadModel):
    id: int
    item_id: str
    change_type: ChangeType
    quantity: int
    stock_before: int
    stock_after: int
    reserved_before: int
    reserved_after: int
    order_id: Optional[str] = None
    actor_id: str
    note: Optional[str] = None
    created_at: datetime


class ReconciliationReport(ReadModel):
    item_id: str
    stock: int
    reserved: int
    replayed_stock: int
    replayed_reserved: int
    entries: int
    gaps: int

    @property
    def consistent(self) -> bool:
        return self.gaps == 0 and (self.stock, self.reserved) == (self.replayed_stock, self.replayed_reserved)


class CartItemRead(ReadModel):
    id: int
    cart_id: int
    item_id: str
    quantity: int


class CartLine(CartItemRead):
    name: str
    price: float
    subtotal: float


class CartSummary(ReadModel):
    item_count: int
    total_quantity: int
    total_amount: float


class CartRead(ReadModel):
    id: Optional[int] = None
    user_id: str
    items: List[CartLine]
    summary: CartSummary


class DeliveryInfo(BaseModel):
    delivery_address: str = Field(..., min_length=1, examples=["1-2-3 Shibuya, Tokyo"])
    phone: str = Field(..., min_length=1, examples=["090-1234-5678"])
    notes: Optional[str] = None


class OrderItemRead(ReadModel):
    id: int
    item_id: str
    quantity: int
    price: float


class OrderSummary(ReadModel):
    item_count: int
    total_quantity: int
    total_amount: float


class OrderRead(ReadModel):
    id: str
    user_id: str
    total_amount: float
    status: OrderStatus
    delivery_address: str
    phone: str
    notes: Optional[str] = None
    order_date: datetime
    updated_at: datetime
    items: List[OrderItemRead]
    summary: OrderSummary


class OrderStatusHistoryRead(ReadModel):
    id: int
    order_id: str
    previous_status: Optional[OrderStatus] = None
    new_status: OrderStatus
    updated_by: str
    updated_at: datetime
    note: Optional[str] = None


class OrderStats(ReadModel):
    total_orders: int
    total_revenue: float
    status_breakdown: Dict[OrderStatus, int]
