from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .domain import DrawerActivityType, ItemKind, PaymentMethod


# ---------- Turno ----------
class ShiftOpenIn(BaseModel):
    employee_id: str
    register_id: Optional[str] = None
    counts: Dict[str, Any] = Field(default_factory=dict)


class ShiftCloseIn(BaseModel):
    register_id: Optional[str] = None
    shift_id: Optional[str] = None
    counts: Dict[str, Any] = Field(default_factory=dict)


class DrawerActivityIn(BaseModel):
    register_id: Optional[str] = None
    type: DrawerActivityType
    amount: Optional[Decimal] = None  # NO_SALE no lleva monto
    reason: Optional[str] = None  # obligatorio para NO_SALE
    note: Optional[str] = None


# ---------- Carrito ----------
class ItemIn(BaseModel):
    id: str
    name: str
    price: Decimal
    kind: ItemKind = ItemKind.PRODUCT


class ItemPatchIn(BaseModel):
    quantity: Optional[int] = None
    delta: Optional[int] = None
    discount_percent: Optional[Decimal] = None


class DiscountIn(BaseModel):
    amount: Decimal
    source: Optional[str] = None


# ---------- Cobro ----------
class CheckoutIn(BaseModel):
    method: PaymentMethod
    cash_received: Optional[Decimal] = None
    # solo SPLIT
    cash_amount: Optional[Decimal] = None
    card_amount: Optional[Decimal] = None


# ---------- Pantalla cliente ----------
class TipSubmitIn(BaseModel):
    location_id: Optional[str] = None
    amount: Decimal
    version: Optional[int] = None
